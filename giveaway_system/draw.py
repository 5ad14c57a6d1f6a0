"""
Giveaway Draw Logic
Deterministic, auditable winner selection for ended giveaways
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Sequence, Tuple

from utils.provably_fair import XorShift32, make_seed, sample_without_replacement

logger = logging.getLogger(__name__)

POOL_ELIGIBLE = "eligible"
POOL_ALL_ENTRIES = "all_entries"


@dataclass
class DrawResult:
    """Outcome of a fairness draw; winners are in placement order"""

    winners: List[int] = field(default_factory=list)
    seed_hash: str = ""
    eligible_hash: str = ""


def iso_millis(value: datetime) -> str:
    """
    Render a timestamp as UTC with millisecond precision, e.g. 2024-01-01T00:00:00.000Z

    Naive datetimes are taken to be UTC already.
    """
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def canonical_ids(user_ids: Optional[Sequence[int]]) -> List[int]:
    """Integer user IDs in ascending order, so the draw depends only on the set."""
    return sorted(int(uid) for uid in (user_ids or []))


def draw(giveaway_id, ends_at_iso: str, eligible_user_ids, winners_count, pool_user_ids=None) -> DrawResult:
    """
    Draw winners for a giveaway.

    The seed is derived from the giveaway identity, its end time and the
    eligible set. Winners are sampled from pool_user_ids, which defaults to the
    eligible set; the caller passes the full entry list when falling back.

    Args:
        giveaway_id: Giveaway ID
        ends_at_iso: End time as produced by iso_millis()
        eligible_user_ids: Eligible user IDs (any order)
        winners_count: Number of winners requested
        pool_user_ids: Optional pool to sample from instead of the eligible set

    Returns:
        DrawResult with min(winners_count, pool size) winners
    """
    eligible = canonical_ids(eligible_user_ids)
    pool = eligible if pool_user_ids is None else canonical_ids(pool_user_ids)

    seed, seed_hash, eligible_hash = make_seed(giveaway_id, ends_at_iso, eligible)
    rnd = XorShift32.from_seed(seed)

    count = min(max(int(winners_count or 0), 0), len(pool))
    winners = sample_without_replacement(pool, count, rnd)

    logger.debug(
        f"Draw for giveaway #{giveaway_id}: pool={len(pool)} requested={winners_count} "
        f"seed_hash={seed_hash[:16]}..."
    )
    return DrawResult(winners=winners, seed_hash=seed_hash, eligible_hash=eligible_hash)


def choose_pool(eligible_user_ids, all_user_ids) -> Tuple[List[int], str]:
    """
    Prefer eligible entrants; fall back to every entrant when none are eligible.

    Returns:
        tuple: (pool, used_pool) where used_pool is POOL_ELIGIBLE or POOL_ALL_ENTRIES
    """
    if eligible_user_ids:
        return list(eligible_user_ids), POOL_ELIGIBLE
    return list(all_user_ids or []), POOL_ALL_ENTRIES


def verify_draw(giveaway_id, ends_at_iso, eligible_user_ids, winners_count, expected_seed_hash,
                expected_winners=None, pool_user_ids=None) -> bool:
    """
    Recompute a draw and compare it with what was recorded.

    Args:
        giveaway_id: Giveaway ID
        ends_at_iso: End time used for the original draw
        eligible_user_ids: Eligible user IDs at draw time
        winners_count: Number of winners requested
        expected_seed_hash: seedHash from the gw.winners_drawn audit record
        expected_winners: Optional recorded winners in placement order
        pool_user_ids: Full entry list when the draw used the fallback pool

    Returns:
        True if the recomputed draw matches
    """
    result = draw(giveaway_id, ends_at_iso, eligible_user_ids, winners_count, pool_user_ids)
    if result.seed_hash != expected_seed_hash:
        return False
    if expected_winners is not None and result.winners != [int(uid) for uid in expected_winners]:
        return False
    return True
