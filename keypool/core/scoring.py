from typing import Dict, List, Optional, Tuple
from .types import CredentialRecord, WindowKind

# Per-minute request exhaustion is the most visible failure, so it weighs most.
SCORE_WEIGHTS = {
    WindowKind.PER_MINUTE_REQUESTS: 0.5,
    WindowKind.PER_DAY_REQUESTS: 0.3,
    WindowKind.PER_MINUTE_COST: 0.2,
}


def availability_score(record: CredentialRecord, now: int) -> float:
    return sum(
        weight * record.windows.get(kind).remaining_ratio(now)
        for kind, weight in SCORE_WEIGHTS.items()
    )


def rank(candidates: List[CredentialRecord], order: Dict[str, int], now: int) -> List[CredentialRecord]:
    """Sort by availability score descending; equal scores keep configuration order."""
    return sorted(
        candidates,
        key=lambda r: (-availability_score(r, now), order.get(r.identifier, len(order)))
    )


def pick_rotation_target(
        ranked: List[CredentialRecord],
        threshold: float,
        now: int
) -> Tuple[Optional[CredentialRecord], Optional[CredentialRecord], float]:
    """
    Find a credential to migrate to when the weakest one is close to its limits.

    Returns ``(target, weakest, weakest_score)``. ``target`` is None when no
    rotation is needed or no other candidate clears the threshold.
    """
    if not ranked:
        return None, None, 0.0

    weakest = min(ranked, key=lambda r: availability_score(r, now))
    weakest_score = availability_score(weakest, now)
    if weakest_score >= threshold:
        return None, weakest, weakest_score

    for r in ranked:
        if r.identifier != weakest.identifier and availability_score(r, now) > threshold:
            return r, weakest, weakest_score
    return None, weakest, weakest_score
