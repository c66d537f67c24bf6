"""
Compute devices for the nonce search.

A device owns three buffers: the read-only header words (32 u32, with the
dispatch's base nonce already placed in word 19), the target words (8 u32)
and the output slots (`capacity` u32). `dispatch(lane_count)` runs one lane
per nonce `base + lane`; every slot below `lane_count` is rewritten with the
lane's nonce when its hash meets the target, else 0. Slots at or above
`lane_count` are left untouched and must not be read by the caller.
"""

from __future__ import annotations

import logging
from typing import Optional, Protocol, Sequence, Tuple

import numpy as np

from .errors import DeviceError
from .header import HEADER_WORDS, NONCE_WORD, decode_nonce
from .sha256 import bswap32, double_sha256_words, hash_words, midstate
from .target import meets_target_lanes

log = logging.getLogger(__name__)


class Device(Protocol):
    capacity: int

    def upload(self, header_words: Sequence[int], target_words: Sequence[int]) -> None: ...

    def dispatch(self, lane_count: int) -> None: ...

    def readback(self) -> np.ndarray: ...


def _check_upload(header_words: Sequence[int], target_words: Sequence[int]) -> None:
    if len(header_words) != HEADER_WORDS:
        raise DeviceError(f"header buffer takes {HEADER_WORDS} words, got {len(header_words)}")
    if len(target_words) != 8:
        raise DeviceError(f"target buffer takes 8 words, got {len(target_words)}")


class HostLaneDevice:
    """
    Runs the kernel on the host, one numpy uint32 element per lane.

    Lanes are evaluated in groups of `lane_group_size` to bound memory; the
    midstate of the first 64 header bytes is computed once per dispatch since
    the nonce only lives in the second block.
    """

    def __init__(self, capacity: int, lane_group_size: int = 4096):
        if capacity <= 0:
            raise ValueError("capacity must be > 0")
        if capacity > 0xFFFFFFFF:
            raise ValueError("capacity must fit in 32 bits")
        if lane_group_size <= 0:
            raise ValueError("lane_group_size must be > 0")
        self.capacity = int(capacity)
        self.lane_group_size = int(lane_group_size)
        self._output = np.zeros(self.capacity, dtype=np.uint32)
        self._header: Optional[Tuple[int, ...]] = None
        self._target: Optional[Tuple[int, ...]] = None

    def upload(self, header_words: Sequence[int], target_words: Sequence[int]) -> None:
        _check_upload(header_words, target_words)
        self._header = tuple(int(w) & 0xFFFFFFFF for w in header_words)
        self._target = tuple(int(w) & 0xFFFFFFFF for w in target_words)

    def dispatch(self, lane_count: int) -> None:
        if self._header is None or self._target is None:
            raise DeviceError("dispatch before upload")
        if not 0 < lane_count <= self.capacity:
            raise DeviceError(f"lane_count {lane_count} outside output capacity {self.capacity}")

        header = self._header
        base = decode_nonce(header[NONCE_WORD])
        mid = midstate(header)
        log.debug("host dispatch base=%#010x lanes=%d", base, lane_count)

        for start in range(0, lane_count, self.lane_group_size):
            stop = min(lane_count, start + self.lane_group_size)
            nonces = np.arange(start, stop, dtype=np.uint32) + np.uint32(base)
            words = list(header)
            words[NONCE_WORD] = bswap32(nonces)
            digest = hash_words(double_sha256_words(words, mid=mid))
            passed = meets_target_lanes(digest, self._target)
            self._output[start:stop] = np.where(passed, nonces, np.uint32(0))

    def readback(self) -> np.ndarray:
        return self._output.copy()
