"""
Response differ: pairs the normal and the h2c response for a target and
reports the differences that matter.

The two passes run independently and their results arrive in any order, so
the differ keeps a cache of half-complete entries keyed by target string. The
cache belongs to one :class:`ResponseDiffer` instance and every
read-modify-write of an entry happens under its lock, so both passes may
feed it from different threads.

What counts as a reportable difference:

* an error on exactly one side (the strongest signal of smuggling-induced
  divergence);
* a different status code;
* a different header shape: keys present on one side only, or present with a
  different number of values (values themselves are not compared, so header
  reordering and per-request values never trigger);
* a different body length.

Bodies of equal length that still differ byte for byte are only attached as
debug detail, since timestamps and nonces legitimately vary.
"""

from __future__ import annotations

import enum
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from h2csmuggler.connection import ResponseRecord
from h2csmuggler.log import fields as render

logger = logging.getLogger(__name__)


class PassKind(enum.Enum):
    NORMAL = "normal"
    H2C = "h2c"


@dataclass
class DiffEntry:
    normal: Optional[ResponseRecord] = None
    h2c: Optional[ResponseRecord] = None

    @property
    def complete(self) -> bool:
        return self.normal is not None and self.h2c is not None


@dataclass
class Mismatch:
    """A reportable difference between the two passes for one target."""

    target: str
    fields: Dict[str, Any] = field(default_factory=dict)
    detail: Dict[str, Any] = field(default_factory=dict)


def _header_partition(normal: ResponseRecord, h2c: ResponseRecord):
    shared: Dict[str, List[str]] = {}
    normal_only: Dict[str, List[str]] = {}
    h2c_only: Dict[str, List[str]] = {}
    for key in normal.headers.keys():
        nv = normal.headers.get_list(key)
        hv = h2c.headers.get_list(key)
        if len(nv) == len(hv):
            shared[key] = nv
            continue
        normal_only[key] = nv
        if hv:
            h2c_only[key] = hv
    for key in h2c.headers.keys():
        if key not in normal.headers:
            h2c_only[key] = h2c.headers.get_list(key)
    return shared, normal_only, h2c_only


def compare(normal: ResponseRecord, h2c: ResponseRecord) -> Optional[Mismatch]:
    """Compare the two sides of a complete entry.

    Returns:
        A :class:`Mismatch` when a reportable difference exists, else ``None``.
        Entries where both sides failed carry no response to compare and
        produce ``None``.
    """
    out = Mismatch(target=h2c.target)
    diff = False

    if (normal.error is None) != (h2c.error is None):
        diff = True
        if h2c.error is not None:
            out.fields["normal-status-code"] = normal.status
            out.fields["normal-response-body-len"] = len(normal.body)
            out.fields["h2c-error"] = str(h2c.error)
        else:
            out.fields["h2c-status-code"] = h2c.status
            out.fields["h2c-response-body-len"] = len(h2c.body)
            out.fields["normal-error"] = str(normal.error)

    if normal.ok and h2c.ok:
        if normal.status != h2c.status:
            diff = True
            out.fields["normal-status-code"] = normal.status
            out.fields["h2c-status-code"] = h2c.status

        shared, normal_only, h2c_only = _header_partition(normal, h2c)
        if normal_only or h2c_only:
            diff = True
            out.fields["normal-headers"] = normal_only
            out.fields["same-headers"] = shared
            out.fields["h2c-headers"] = h2c_only

        if len(normal.body) != len(h2c.body):
            diff = True
            out.fields["normal-response-body-len"] = len(normal.body)
            out.fields["h2c-response-body-len"] = len(h2c.body)

        if normal.body != h2c.body:
            out.detail["normal-body"] = normal.body.decode("utf-8", "replace")
            out.detail["h2c-body"] = h2c.body.decode("utf-8", "replace")

    return out if diff else None


class ResponseDiffer:
    """Lock-guarded cache of normal/h2c pairs.

    Args:
        delete_on_show: Drop an entry as soon as it has been compared. When
            false the entry is kept, so a later record for the same target
            overwrites its slot and triggers a fresh comparison.
    """

    def __init__(self, delete_on_show: bool = False) -> None:
        self.delete_on_show = delete_on_show
        self.mismatches: List[Mismatch] = []
        self._cache: Dict[str, DiffEntry] = {}
        self._lock = threading.Lock()

    def record(self, kind: PassKind, record: ResponseRecord) -> Optional[Mismatch]:
        """Store ``record`` in its slot and compare once both slots are filled."""
        with self._lock:
            entry = self._cache.setdefault(record.target, DiffEntry())
            if kind is PassKind.NORMAL:
                entry.normal = record
            else:
                entry.h2c = record
            if not entry.complete:
                return None
            mismatch = compare(entry.normal, entry.h2c)  # type: ignore[arg-type]
            if self.delete_on_show:
                del self._cache[record.target]
            if mismatch is not None:
                self.mismatches.append(mismatch)

        if mismatch is not None:
            self._show(mismatch)
        return mismatch

    def show_diff_normal(self, record: ResponseRecord) -> Optional[Mismatch]:
        return self.record(PassKind.NORMAL, record)

    def show_diff_h2c(self, record: ResponseRecord) -> Optional[Mismatch]:
        return self.record(PassKind.H2C, record)

    def pending(self) -> List[str]:
        """Targets still waiting for one of their two sides."""
        with self._lock:
            return [t for t, e in self._cache.items() if not e.complete]

    @staticmethod
    def _show(mismatch: Mismatch) -> None:
        kv = dict(mismatch.fields, target=mismatch.target)
        if logger.isEnabledFor(logging.DEBUG) and mismatch.detail:
            logger.debug("results differ %s", render(**kv, **mismatch.detail))
        else:
            logger.info("results differ %s", render(**kv))
