"""
Concurrent scanning over smuggled connections.

Every scan uses the same fan-out/fan-in shape:

* a single dispatcher thread feeds the targets into a bounded work queue and
  then closes it with one sentinel per worker;
* a bounded pool of workers drains the queue, pushing exactly one
  :class:`ResponseRecord` per target onto a bounded result queue;
* once every worker has finished, the dispatcher closes the result queue;
* the calling thread is the only consumer of results. It logs each record,
  hands it to ``on_result`` and returns only after the dispatcher and all
  workers are done.

``get_paths_on_host`` keeps one long-lived connection per worker, because the
smuggling effect only exists inside an already upgraded connection.
``get_parallel_hosts`` dials a fresh connection per target. ``get_direct`` is
the control pass without any upgrade.
"""

from __future__ import annotations

import concurrent.futures as futures
import logging
import queue
import threading
from typing import Callable, Iterator, List, Optional, Sequence

import httpx  # type: ignore

from h2csmuggler.config import ConnectionConfig, ScanConfig
from h2csmuggler.connection import (
    Connection,
    FailedConnection,
    Request,
    ResponseRecord,
    open_connection,
)
from h2csmuggler.direct import NORMAL, DirectClient
from h2csmuggler.errors import DialError, RequestError, SmuggleError
from h2csmuggler.log import fields, trace
from h2csmuggler.target import Target

logger = logging.getLogger(__name__)

RequestMutation = Callable[[Request], None]
ResultHandler = Callable[[ResponseRecord], None]
Connector = Callable[[str, ConnectionConfig], Connection]
Worker = Callable[[Iterator[str], Callable[[ResponseRecord], None]], None]

_CLOSED = object()


def request_header(key: str, value: str) -> RequestMutation:
    """A mutation that adds ``key: value`` to every request, keeping existing values."""
    def mutate(request: Request) -> None:
        request.headers = httpx.Headers(list(request.headers.multi_items()) + [(key, value)])
    return mutate


def _items(work: "queue.Queue[object]") -> Iterator[str]:
    while True:
        item = work.get()
        if item is _CLOSED:
            return
        yield item  # type: ignore[misc]


class Scanner:
    """Drives many requests across smuggled (or direct) connections.

    Args:
        config: Pool sizes, connection settings and expected statuses.
        connector: Opens a connection for a target URL. Anything it raises
            becomes a failed connection. Defaults to :func:`open_connection`.
        direct: Client used by :meth:`get_direct`. Created on first use.
    """

    def __init__(self, config: Optional[ScanConfig] = None, connector: Connector = open_connection,
                 direct: Optional[DirectClient] = None) -> None:
        self.config = config or ScanConfig()
        self.connector = connector
        self.direct = direct

    # ------------------------------------------------------------------
    # Request construction
    # ------------------------------------------------------------------
    def build_request(self, url: str, mutations: Sequence[RequestMutation] = ()) -> Request:
        request = Request.build(url)
        request.expected_status = self.config.expected_status
        for mutate in mutations:
            mutate(request)
        return request

    def _issue(self, send: Callable[[Request], ResponseRecord], url: str,
               mutations: Sequence[RequestMutation], source: str = "h2c") -> ResponseRecord:
        try:
            request = self.build_request(url, mutations)
        except ValueError as e:
            return ResponseRecord.failure(url, RequestError(f"request creation: {e}", url), source)
        try:
            record = send(request)
        except SmuggleError as e:
            trace(logger, "failed to request %s", fields(target=url, error=str(e)))
            return ResponseRecord.failure(url, e, source)
        except Exception as e:
            # any other failure still belongs to this target alone
            logger.debug("request crashed %s", fields(target=url, error=repr(e)))
            return ResponseRecord.failure(url, RequestError(f"connection do: {e!r}", url), source)
        record.source = source
        return record

    def _connect(self, url: str, config: ConnectionConfig) -> Connection:
        try:
            return self.connector(url, config)
        except SmuggleError as e:
            return FailedConnection(url, e)
        except Exception as e:
            logger.debug("connect crashed %s", fields(target=url, error=repr(e)))
            return FailedConnection(url, DialError(f"failed to connect: {e!r}", url))

    # ------------------------------------------------------------------
    # Scans
    # ------------------------------------------------------------------
    def get_paths_on_host(self, base: str, targets: Sequence[str],
                          mutations: Sequence[RequestMutation] = (),
                          on_result: Optional[ResultHandler] = None) -> List[ResponseRecord]:
        """Smuggle every target over connections upgraded against ``base``.

        Each worker opens one connection to ``base``, sends a baseline request
        for ``base`` itself (its result is not reported), then issues one
        request per target it drains. If its connection failed, the worker
        reports that error for each of its targets without sending anything.

        Raises:
            ValueError: if ``base`` is not a valid http(s) URL.
        """
        Target.parse(base)
        if not targets:
            return []
        # no need for more connections than targets
        pool_size = min(self.config.max_conn_per_host, len(targets))
        conn_config = self.config.connection

        def worker(items: Iterator[str], emit: Callable[[ResponseRecord], None]) -> None:
            conn = self._connect(base, conn_config)
            conn_error = conn.error
            try:
                if conn_error is None:
                    baseline = self._issue(conn.do, base, mutations)
                    if baseline.error is not None:
                        trace(logger, "baseline failed %s", fields(target=base, error=str(baseline.error)))
                for t in items:
                    if conn_error is not None:
                        emit(ResponseRecord.failure(t, conn_error))
                        continue
                    trace(logger, "requesting %s", fields(target=t))
                    emit(self._issue(conn.do, t, mutations))
            finally:
                conn.close()

        return self._run(targets, pool_size, worker, on_result)

    def get_parallel_hosts(self, targets: Sequence[str],
                           mutations: Sequence[RequestMutation] = (),
                           on_result: Optional[ResultHandler] = None) -> List[ResponseRecord]:
        """Request each target over its own freshly upgraded connection."""
        if not targets:
            return []
        conn_config = self.config.connection

        def worker(items: Iterator[str], emit: Callable[[ResponseRecord], None]) -> None:
            for t in items:
                trace(logger, "requesting %s", fields(target=t))
                conn = self._connect(t, conn_config)
                try:
                    emit(self._issue(conn.do, t, mutations))
                finally:
                    conn.close()

        return self._run(targets, self.config.max_parallel_hosts, worker, on_result)

    def get_direct(self, targets: Sequence[str],
                   mutations: Sequence[RequestMutation] = (),
                   on_result: Optional[ResultHandler] = None) -> List[ResponseRecord]:
        """Request each target directly, without an upgrade (the normal pass)."""
        if not targets:
            return []
        if self.direct is None:
            self.direct = DirectClient()
        client = self.direct

        def worker(items: Iterator[str], emit: Callable[[ResponseRecord], None]) -> None:
            for t in items:
                trace(logger, "requesting %s", fields(target=t, source=NORMAL))
                emit(self._issue(client.do, t, mutations, source=NORMAL))

        return self._run(targets, self.config.max_parallel_hosts, worker, on_result)

    # ------------------------------------------------------------------
    # Fan-out / fan-in
    # ------------------------------------------------------------------
    def _run(self, targets: Sequence[str], pool_size: int, worker: Worker,
             on_result: Optional[ResultHandler]) -> List[ResponseRecord]:
        work: "queue.Queue[object]" = queue.Queue(maxsize=pool_size)
        results: "queue.Queue[object]" = queue.Queue(maxsize=pool_size)
        records: List[ResponseRecord] = []

        with futures.ThreadPoolExecutor(max_workers=pool_size, thread_name_prefix="h2csmuggler") as pool:
            workers = [pool.submit(self._work, worker, work, results) for _ in range(pool_size)]
            dispatcher = threading.Thread(
                target=self._dispatch,
                args=(targets, work, pool_size, workers, results),
                name="h2csmuggler-dispatch",
                daemon=True,
            )
            dispatcher.start()
            try:
                for record in iter(results.get, _CLOSED):
                    record.log()  # type: ignore[union-attr]
                    if on_result is not None:
                        on_result(record)  # type: ignore[arg-type]
                    records.append(record)  # type: ignore[arg-type]
            except BaseException:
                # keep the workers unblocked so the pool can shut down
                for _ in iter(results.get, _CLOSED):
                    pass
                raise
            finally:
                dispatcher.join()

        for f in workers:
            f.result()
        return records

    @staticmethod
    def _work(worker: Worker, work: "queue.Queue[object]", results: "queue.Queue[object]") -> None:
        items = _items(work)
        try:
            worker(items, results.put)
        except BaseException:
            for _ in items:
                pass
            raise

    @staticmethod
    def _dispatch(targets: Sequence[str], work: "queue.Queue[object]", pool_size: int,
                  workers: List[futures.Future], results: "queue.Queue[object]") -> None:
        for t in targets:
            trace(logger, "scheduling %s", fields(target=t))
            work.put(t)
        for _ in range(pool_size):
            work.put(_CLOSED)
        # wait for all the workers to finish, then close the result queue
        futures.wait(workers)
        results.put(_CLOSED)
