"""
Session order randomization - deterministic per participant

The order depends only on the user id string, so it is identical across
restarts, fresh instances and regardless of what the store contains.

Algorithm:
1. Seed: fold character codes into a signed 32-bit accumulator,
   hash = hash * 31 + code (wrapping at 32 bits); seed = abs(hash)
2. Generator: seed = (seed * 9301 + 49297) % 233280, draw = seed / 233280
3. Fisher-Yates over [0..n-1], i from n-1 down to 1, j = floor(draw * (i + 1))
"""

from collections import Counter
from typing import Callable, Dict, List, Sequence

LCG_MULTIPLIER = 9301
LCG_INCREMENT = 49297
LCG_MODULUS = 233280


def _to_int32(value: int) -> int:
    value &= 0xFFFFFFFF
    return value - 0x100000000 if value & 0x80000000 else value


def seed_from_user_id(user_id: str) -> int:
    """Non-negative seed derived from the user id's character codes"""
    h = 0
    for char in user_id:
        h = _to_int32((h << 5) - h + ord(char))
    return abs(h)


def seeded_random(seed: int) -> Callable[[], float]:
    """Linear congruential generator yielding floats in [0, 1)"""
    current = seed

    def draw() -> float:
        nonlocal current
        current = (current * LCG_MULTIPLIER + LCG_INCREMENT) % LCG_MODULUS
        return current / LCG_MODULUS

    return draw


def assign_order(user_id: str, n: int = 9) -> List[int]:
    """
    Deterministic permutation of [0..n-1] for a participant.

    Args:
        user_id: Participant id
        n: Number of session variants

    Returns:
        List of n distinct ids
    """
    rng = seeded_random(seed_from_user_id(user_id))
    order = list(range(n))

    for i in range(n - 1, 0, -1):
        j = int(rng() * (i + 1))
        order[i], order[j] = order[j], order[i]

    return order


def distribution_summary(order: Sequence[int]) -> Dict[int, int]:
    """Count per variant id (diagnostics only)"""
    return dict(sorted(Counter(order).items()))
