"""
Target list loading.

Targets come from command-line arguments, from text or gzip-compressed files
with one entry per line, or from standard input when the name ``-`` is given.
"""

from __future__ import annotations

import gzip
import sys
from typing import Iterable, List, Optional, Sequence, TextIO

STDIN = "-"


def _iter_stream(stream: TextIO) -> Iterable[str]:
    for ln in stream:
        entry = ln.strip()
        if not entry or entry.startswith("#"):
            continue
        yield entry


def iter_lines(path: str) -> Iterable[str]:
    """Yield non-empty, non-comment lines from a text or .gz file (or stdin).

    Args:
        path: Filesystem path, or ``-`` for standard input.

    Yields:
        Each stripped entry in file order.
    """
    if path == STDIN:
        yield from _iter_stream(sys.stdin)
        return
    opener = gzip.open if path.endswith(".gz") else open
    with opener(path, "rt", encoding="utf-8", errors="ignore") as f:
        yield from _iter_stream(f)


def load_targets(args: Sequence[str], infile: Optional[str] = None) -> List[str]:
    """Collect targets from ``infile`` (if given) followed by ``args``.

    A lone ``-`` in ``args`` reads standard input. Order is preserved and
    duplicates are kept.
    """
    targets: List[str] = []
    if infile:
        targets.extend(iter_lines(infile))
    for a in args:
        if a == STDIN:
            targets.extend(iter_lines(STDIN))
        else:
            targets.append(a)
    return targets
