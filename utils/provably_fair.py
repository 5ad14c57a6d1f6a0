"""
Provably Fair Utilities for Giveaway Draws
Implements SHA-256 seed derivation and a reproducible xorshift32 sampler
"""

import hashlib
from typing import List, Sequence, Tuple

# xorshift32 is stuck at zero forever, so a zero state is replaced by this constant
XORSHIFT_ZERO_STATE = 2463534242

_UINT32 = 0xFFFFFFFF
_UINT32_RANGE = 4294967296


def sha256_hex(value) -> str:
    """Hex SHA-256 digest of str(value) encoded as UTF-8."""
    return hashlib.sha256(str(value).encode("utf-8")).hexdigest()


def make_seed(giveaway_id, ends_at_iso: str, eligible_user_ids: Sequence[int]) -> Tuple[str, str, str]:
    """
    Derive the draw seed for a giveaway.

    Algorithm:
    1. eligible_hash = H("id1,id2,...")
    2. seed = H("gw:<id>|ends:<iso>|eligible:<eligible_hash>")
    3. seed_hash = H(seed)  (the commitment written to the audit log)

    Args:
        giveaway_id: Giveaway identifier
        ends_at_iso: Giveaway end time, millisecond ISO form
        eligible_user_ids: Eligible user IDs, already in canonical order

    Returns:
        tuple: (seed, seed_hash, eligible_hash)
    """
    eligible_csv = ",".join(str(int(uid)) for uid in eligible_user_ids)
    eligible_hash = sha256_hex(eligible_csv)
    seed = sha256_hex(f"gw:{giveaway_id}|ends:{ends_at_iso}|eligible:{eligible_hash}")
    seed_hash = sha256_hex(seed)
    return seed, seed_hash, eligible_hash


class XorShift32:
    """32-bit xorshift generator producing floats in [0, 1)"""

    def __init__(self, state: int):
        state &= _UINT32
        self.state = state or XORSHIFT_ZERO_STATE

    @classmethod
    def from_seed(cls, seed_hex: str) -> "XorShift32":
        """Seed from the first 4 bytes (big-endian) of a hex digest."""
        return cls(int.from_bytes(bytes.fromhex(seed_hex)[:4], "big"))

    def next_uint32(self) -> int:
        x = self.state
        x ^= (x << 13) & _UINT32
        x ^= x >> 17
        x ^= (x << 5) & _UINT32
        self.state = x
        return x

    def next_float(self) -> float:
        return self.next_uint32() / _UINT32_RANGE

    __call__ = next_float


def sample_without_replacement(items: Sequence, k: int, rand01) -> List:
    """
    Pick k items in draw order; each pick removes the item from the pool.

    Args:
        items: Candidate pool (not modified)
        k: Number of picks wanted
        rand01: Callable returning floats in [0, 1)

    Returns:
        list: min(k, len(items)) distinct items, first pick first
    """
    pool = list(items)
    picked = []
    while len(picked) < k and pool:
        idx = int(rand01() * len(pool))
        picked.append(pool.pop(idx))
    return picked
