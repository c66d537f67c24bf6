from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterator, Optional, Sequence

import numpy as np

from .device import Device
from .errors import ValidationError
from .header import HEADER_WORDS, block_hash_hex, with_nonce, words_to_header
from .sha256 import double_sha256_words, hash_words
from .target import meets_target

log = logging.getLogger(__name__)

NONCE_SPACE = 1 << 32


@dataclass(frozen=True)
class NonceRange:
    """Nonces base .. base+lane_count-1 (mod 2^32), dispatched together."""
    base: int
    lane_count: int

    def __post_init__(self) -> None:
        if not 0 <= self.base < NONCE_SPACE:
            raise ValueError("base must be a 32-bit nonce")
        if not 0 < self.lane_count <= NONCE_SPACE:
            raise ValueError("lane_count must be in 1..2^32")

    def next(self) -> "NonceRange":
        return NonceRange((self.base + self.lane_count) % NONCE_SPACE, self.lane_count)

    def __contains__(self, nonce: object) -> bool:
        if not isinstance(nonce, int):
            return False
        return (nonce - self.base) % NONCE_SPACE < self.lane_count

    @staticmethod
    def sweep(base: int, lane_count: int) -> Iterator["NonceRange"]:
        """
        Successive non-overlapping ranges covering all 2^32 nonces once,
        starting at `base`. The last range is shortened to end where the first began.
        """
        done = 0
        cur = base % NONCE_SPACE
        while done < NONCE_SPACE:
            lanes = min(lane_count, NONCE_SPACE - done)
            yield NonceRange(cur, lanes)
            done += lanes
            cur = (cur + lanes) % NONCE_SPACE


@dataclass(frozen=True)
class Solution:
    nonce: int
    header: bytes
    generation: int = 0

    @property
    def hash_hex(self) -> str:
        return block_hash_hex(self.header)


def verify_nonce(header_words: Sequence[int], nonce: int, target_words: Sequence[int]) -> bool:
    """Host reference check of one candidate nonce."""
    words = with_nonce(header_words, nonce)
    return meets_target(hash_words(double_sha256_words(words)), target_words)


def collect(
    output: np.ndarray,
    header_words: Sequence[int],
    base_nonce: int,
    lane_count: int,
    target_words: Sequence[int],
) -> Optional[int]:
    """
    Scan output slots [0, lane_count) and return the first reported nonce.

    Lowest lane wins. A slot holding anything but its own lane's nonce, or a
    nonce whose hash misses the target on the host, raises ValidationError.
    """
    slots = np.asarray(output[:lane_count], dtype=np.uint32)
    hits = np.flatnonzero(slots)
    if hits.size == 0:
        return None

    lane = int(hits[0])
    nonce = int(slots[lane])
    expected = (base_nonce + lane) % NONCE_SPACE
    if nonce != expected:
        raise ValidationError(nonce, f"reported in lane {lane}, which holds nonce {expected:#010x}")
    if not verify_nonce(header_words, nonce, target_words):
        raise ValidationError(nonce)
    return nonce


class NonceSearchEngine:
    """
    Drives one device through upload / dispatch / readback per nonce range.

    The only state kept between calls is whatever header the device holds,
    and it is overwritten by every search.
    """

    def __init__(self, device: Device):
        self.device = device

    @property
    def capacity(self) -> int:
        return int(self.device.capacity)

    def search(
        self,
        header_words: Sequence[int],
        base_nonce: int,
        lane_count: int,
        target_words: Sequence[int],
    ) -> Optional[int]:
        """
        Hash nonces base_nonce .. base_nonce+lane_count-1 (mod 2^32).

        - header_words: 32 padded header words; word 19 is replaced.
        - target_words: 8 words, most-significant first.

        Returns the winning nonce or None. DeviceError propagates untouched.
        """
        if len(header_words) != HEADER_WORDS:
            raise ValueError("header must be exactly 32 words")
        if not 0 < lane_count <= self.capacity:
            raise ValueError(f"lane_count must be in 1..{self.capacity}")
        base = base_nonce % NONCE_SPACE

        words = with_nonce(header_words, base)
        self.device.upload(words, target_words)
        self.device.dispatch(lane_count)
        output = self.device.readback()
        return collect(output, words, base, lane_count, target_words)

    def search_range(
        self,
        header_words: Sequence[int],
        nonce_range: NonceRange,
        target_words: Sequence[int],
    ) -> Optional[int]:
        return self.search(header_words, nonce_range.base, nonce_range.lane_count, target_words)

    def solution(self, header_words: Sequence[int], nonce: int, generation: int = 0) -> Solution:
        header = words_to_header(with_nonce(header_words, nonce))
        return Solution(nonce=nonce, header=header, generation=generation)
