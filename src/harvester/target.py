from __future__ import annotations

from typing import Sequence, Tuple

import numpy as np

# Bitcoin difficulty-1 target
DIFF1_TARGET = int(
    "00000000FFFF0000000000000000000000000000000000000000000000000000", 16
)

MAX_TARGET = (1 << 256) - 1


def target_from_bits(bits: int) -> int:
    """
    Decode the compact `nBits` header field into a 256-bit target.

    Layout: 1-byte exponent, 3-byte mantissa, target = mantissa * 256^(exponent-3).
    A set sign bit or a value wider than 256 bits is rejected.
    """
    bits = int(bits)
    if not 0 <= bits <= 0xFFFFFFFF:
        raise ValueError("bits must be a 32-bit value")
    exponent = bits >> 24
    mantissa = bits & 0x007FFFFF
    if bits & 0x00800000 and mantissa:
        raise ValueError(f"negative compact target: {bits:#010x}")
    if exponent <= 3:
        target = mantissa >> (8 * (3 - exponent))
    else:
        target = mantissa << (8 * (exponent - 3))
    if target > MAX_TARGET:
        raise ValueError(f"compact target overflows 256 bits: {bits:#010x}")
    return target


def target_from_difficulty(diff: float) -> int:
    """
    Target for a share-style difficulty.
    target = DIFF1_TARGET / diff
    """
    if diff <= 0:
        raise ValueError("difficulty must be > 0")
    return min(MAX_TARGET, int(DIFF1_TARGET / diff))


def target_to_words(target: int) -> Tuple[int, ...]:
    """256-bit target as 8 u32 words, most-significant word first."""
    if not 0 <= target <= MAX_TARGET:
        raise ValueError("target must fit in 256 bits")
    b = int(target).to_bytes(32, "big", signed=False)
    return tuple(int.from_bytes(b[i:i + 4], "big") for i in range(0, 32, 4))


def words_to_target(words: Sequence[int]) -> int:
    if len(words) != 8:
        raise ValueError("expected 8 words")
    return int.from_bytes(b"".join(int(w).to_bytes(4, "big") for w in words), "big")


def meets_target(hash_words: Sequence[int], target_words: Sequence[int]) -> bool:
    """
    True iff the hash value is <= the target, both given most-significant word first.

    Word-wise scan with early exit; equal words move on to the next one.
    """
    for h, t in zip(hash_words, target_words):
        if h > t:
            return False
        if h < t:
            return True
    return True


def meets_target_lanes(hash_words: Sequence[np.ndarray], target_words: Sequence[int]) -> np.ndarray:
    """Lane-vector form of `meets_target`: one boolean per lane."""
    shape = np.broadcast(*hash_words).shape
    passed = np.zeros(shape, dtype=bool)
    undecided = np.ones(shape, dtype=bool)
    for h, t in zip(hash_words, target_words):
        passed |= undecided & (h < t)
        undecided &= h == t
    return passed | undecided
