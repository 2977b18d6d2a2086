"""Star/platinum progress rules for a single node.

Stars climb one rung at a time, and only when the quiz mode matches the rung
the node is on: ``initial`` takes 0 -> 1, ``practice`` 1 -> 2 and ``advanced``
2 -> 3. A correct ``advanced`` answer at 3 stars refreshes the platinum window.
"""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, replace
from typing import Any


MODES = ("initial", "practice", "advanced")
MAX_STARS = 3

PLATINUM_TTL_MS = 30 * 24 * 60 * 60 * 1000

# (mode, current stars) -> stars after a correct answer.
_NEXT_STARS = {
    ("initial", 0): 1,
    ("practice", 1): 2,
    ("advanced", 2): 3,
    ("advanced", 3): 3,
}


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class UserProgress:
    node_id: str
    stars: int = 0
    platinum_until: int | None = None
    times_correct: int = 0
    times_wrong: int = 0
    last_practiced: int | None = None

    def is_platinum(self, at_ms: int | None = None) -> bool:
        if self.platinum_until is None:
            return False
        at = now_ms() if at_ms is None else at_ms
        return self.platinum_until > at

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def validate_mode(mode: str) -> str:
    if mode not in MODES:
        raise ValueError(f"Unknown mode {mode!r}; expected one of: {', '.join(MODES)}")
    return mode


def apply_answer(
    progress: UserProgress,
    *,
    correct: bool,
    mode: str,
    at_ms: int | None = None,
) -> UserProgress:
    """Return ``progress`` after one quiz answer."""
    validate_mode(mode)
    at = now_ms() if at_ms is None else at_ms

    if not correct:
        return replace(progress, times_wrong=progress.times_wrong + 1, last_practiced=at)

    stars = progress.stars
    platinum_until = progress.platinum_until
    nxt = _NEXT_STARS.get((mode, stars))
    if nxt is not None:
        stars = nxt
        if stars == MAX_STARS:
            platinum_until = at + PLATINUM_TTL_MS

    return replace(
        progress,
        stars=stars,
        platinum_until=platinum_until,
        times_correct=progress.times_correct + 1,
        last_practiced=at,
    )
