"""
Scale-in selection from membership snapshots.
"""

from typing import Iterable, List

from ..health.membership import HealthSnapshot, MemberState

# Unhealthy members leave before healthy ones. Initializing members were
# never in rotation and cannot be drained, so they are never picked.
_SCALE_IN_RANK = {
    MemberState.UNHEALTHY: 0,
    MemberState.IN_SERVICE: 1,
}


def select_scale_in(snapshots: Iterable[HealthSnapshot], desired: int) -> List[str]:
    """
    Pick the instances to drain so that at most ``desired`` members remain.

    Members already Draining count as leaving. Within a rank, the instance
    with the most consecutive failures goes first, then by instance id.

    Returns:
        Instance ids to drain, possibly fewer than needed when only
        Initializing members are left to pick from
    """
    if desired < 0:
        raise ValueError("desired must be >= 0")
    staying = [s for s in snapshots if s.state is not MemberState.DRAINING]
    excess = len(staying) - desired
    if excess <= 0:
        return []

    candidates = sorted(
        (s for s in staying if s.state in _SCALE_IN_RANK),
        key=lambda s: (_SCALE_IN_RANK[s.state], -s.consecutive_failures, s.instance_id),
    )
    return [s.instance_id for s in candidates[:excess]]
