"""Path permutation helpers for the ``mutate append`` command."""

from __future__ import annotations

from typing import List, Sequence


def join(base: str, path: str) -> str:
    """Join ``base`` and ``path`` with exactly one slash between them."""
    return base.rstrip("/") + "/" + path.lstrip("/")


def prefix(bases: Sequence[str], prefixes: Sequence[str]) -> List[str]:
    """Cross multiply every base with every path prefix.

    >>> prefix(["a.com", "b.com"], ["foo", "bar"])
    ['a.com/foo', 'a.com/bar', 'b.com/foo', 'b.com/bar']
    """
    return [join(base, p) for base in bases for p in prefixes]
