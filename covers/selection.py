"""Pick the best community art candidate for a game."""

from __future__ import annotations

from typing import Any, Iterable, Mapping, Sequence


def _score(candidate: Mapping[str, Any]) -> float:
    value = candidate.get("score")
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0.0
    return float(value)


def is_flagged_unsafe(candidate: Mapping[str, Any]) -> bool:
    flags = candidate.get("safetyFlags")
    if isinstance(flags, Mapping):
        return bool(flags.get("nsfw") or flags.get("humor"))
    return bool(candidate.get("nsfw") or candidate.get("humor"))


def select_best(
    candidates: Sequence[Mapping[str, Any]],
    exclude_ids: Iterable[Any] = (),
) -> Mapping[str, Any] | None:
    """Return the highest scoring candidate not in ``exclude_ids``.

    Safe candidates win; unsafe ones are only offered when nothing safe is
    left.  ``None`` means every candidate has already been excluded.
    """

    excluded = set(exclude_ids)
    available = [item for item in candidates if item.get("id") not in excluded]
    if not available:
        return None
    safe = [item for item in available if not is_flagged_unsafe(item)]
    # max() keeps the first of equal scores, matching a stable descending sort.
    return max(safe or available, key=_score)


__all__ = ["is_flagged_unsafe", "select_best"]
