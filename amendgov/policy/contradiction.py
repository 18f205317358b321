"""Contradiction heuristic between two amendment texts.

Two texts contradict when one uses a word from an opposing pair, the
other uses its counterpart, and they share at least one substantive
word. The detector is pluggable: AmendmentSafety accepts any callable
with the same signature.
"""

from __future__ import annotations

import re
from typing import Callable

from amendgov.policy.rules import CONTRADICTION_MIN_SHARED_WORD, CONTRADICTION_PAIRS

ContradictionDetector = Callable[[str, str], bool]

_WORD = re.compile(r"[a-z][a-z0-9_]*")


def _words(text: str) -> set[str]:
    return set(_WORD.findall(text.lower()))


def find_contradiction(existing: str, candidate: str) -> tuple[str, str] | None:
    """Return the opposing pair that makes the texts contradict, if any."""
    a, b = _words(existing), _words(candidate)
    shared = {w for w in a & b if len(w) >= CONTRADICTION_MIN_SHARED_WORD}
    if not shared:
        return None
    for left, right in CONTRADICTION_PAIRS:
        if (left in a and right in b) or (right in a and left in b):
            return left, right
    return None


def detect_contradiction(existing: str, candidate: str) -> bool:
    return find_contradiction(existing, candidate) is not None
