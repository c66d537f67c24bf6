from __future__ import annotations

import logging
import time
from typing import Optional, Sequence

import numpy as np
import pyopencl as cl

from .device import _check_upload
from .errors import DeviceError
from .header import HEADER_WORDS
from .sha256 import SHA256_H0, SHA256_K

log = logging.getLogger(__name__)

DEVICE_TYPES = {
    "gpu": cl.device_type.GPU,
    "cpu": cl.device_type.CPU,
    "any": cl.device_type.ALL,
}

_KERNEL_TEMPLATE = r"""
#define LANE_GROUP_SIZE {lane_group_size}

#define ROTR(x, n) (((x) >> (n)) | ((x) << (32 - (n))))
#define CH(x, y, z) (((x) & (y)) ^ (~(x) & (z)))
#define MAJ(x, y, z) (((x) & (y)) ^ ((x) & (z)) ^ ((y) & (z)))
#define BSIG0(x) (ROTR(x, 2) ^ ROTR(x, 13) ^ ROTR(x, 22))
#define BSIG1(x) (ROTR(x, 6) ^ ROTR(x, 11) ^ ROTR(x, 25))
#define SSIG0(x) (ROTR(x, 7) ^ ROTR(x, 18) ^ ((x) >> 3))
#define SSIG1(x) (ROTR(x, 17) ^ ROTR(x, 19) ^ ((x) >> 10))

__constant uint K[64] = {{
{k_table}
}};

__constant uint H0[8] = {{ {h0_table} }};

uint swap_word(uint x) {{
    return (x >> 24) | ((x >> 8) & 0x0000FF00u) | ((x << 8) & 0x00FF0000u) | (x << 24);
}}

void compress(uint state[8], const uint block[16]) {{
    uint w[64];
    for (int i = 0; i < 16; i++) w[i] = block[i];
    for (int i = 16; i < 64; i++) w[i] = SSIG1(w[i - 2]) + w[i - 7] + SSIG0(w[i - 15]) + w[i - 16];

    uint a = state[0], b = state[1], c = state[2], d = state[3];
    uint e = state[4], f = state[5], g = state[6], h = state[7];
    for (int i = 0; i < 64; i++) {{
        uint t1 = h + BSIG1(e) + CH(e, f, g) + K[i] + w[i];
        uint t2 = BSIG0(a) + MAJ(a, b, c);
        h = g; g = f; f = e; e = d + t1;
        d = c; c = b; b = a; a = t1 + t2;
    }}
    state[0] += a; state[1] += b; state[2] += c; state[3] += d;
    state[4] += e; state[5] += f; state[6] += g; state[7] += h;
}}

__kernel __attribute__((reqd_work_group_size(LANE_GROUP_SIZE, 1, 1)))
void search(__global const uint *header,
            __global const uint *target,
            const uint lane_count,
            __global uint *output)
{{
    uint lane = get_global_id(0);
    if (lane >= lane_count) return;

    uint nonce = swap_word(header[19]) + lane;
    uint state[8];
    uint block[16];

    for (int i = 0; i < 8; i++) state[i] = H0[i];
    for (int i = 0; i < 16; i++) block[i] = header[i];
    compress(state, block);

    for (int i = 0; i < 16; i++) block[i] = header[16 + i];
    block[3] = swap_word(nonce);
    compress(state, block);

    for (int i = 0; i < 8; i++) block[i] = state[i];
    block[8] = 0x80000000u;
    for (int i = 9; i < 15; i++) block[i] = 0u;
    block[15] = 256u;
    for (int i = 0; i < 8; i++) state[i] = H0[i];
    compress(state, block);

    uint pass = 1u;
    for (int i = 0; i < 8; i++) {{
        uint h = swap_word(state[7 - i]);
        if (h > target[i]) {{ pass = 0u; break; }}
        if (h < target[i]) break;
    }}
    output[lane] = pass ? nonce : 0u;
}}
"""


def kernel_source(lane_group_size: int) -> str:
    """OpenCL C source of the search kernel, built around the shared constant tables."""
    if lane_group_size <= 0:
        raise ValueError("lane_group_size must be > 0")
    rows = []
    for i in range(0, 64, 8):
        rows.append("    " + ", ".join(f"0x{k:08x}u" for k in SHA256_K[i:i + 8]) + ",")
    return _KERNEL_TEMPLATE.format(
        lane_group_size=int(lane_group_size),
        k_table="\n".join(rows),
        h0_table=", ".join(f"0x{h:08x}u" for h in SHA256_H0),
    )


class OpenCLDevice:
    """
    Search kernel on an OpenCL device (GPUs by default).

    Buffers are allocated once for `capacity` lanes; each dispatch is rounded
    up to whole lane groups and the kernel guards lanes past `lane_count`.
    """

    def __init__(
        self,
        capacity: int,
        lane_group_size: int = 64,
        device_index: int = 0,
        context: Optional[cl.Context] = None,
        device_type: str = "gpu",
    ):
        if capacity <= 0:
            raise ValueError("capacity must be > 0")
        if device_type not in DEVICE_TYPES:
            raise ValueError(f"device_type must be one of {', '.join(DEVICE_TYPES)}")
        self.capacity = int(capacity)

        try:
            if context is None:
                devices = []
                for platform in cl.get_platforms():
                    try:
                        devices.extend(platform.get_devices(DEVICE_TYPES[device_type]))
                    except cl.Error:
                        # platforms without a device of this type raise DEVICE_NOT_FOUND
                        continue
                if not devices:
                    raise DeviceError(f"No OpenCL {device_type} devices found")
                if device_index >= len(devices):
                    raise DeviceError(f"OpenCL device {device_index} not available ({len(devices)} found)")
                context = cl.Context([devices[device_index]])
            self.context = context
            self.queue = cl.CommandQueue(self.context)

            mf = cl.mem_flags
            self._header_buf = cl.Buffer(self.context, mf.READ_ONLY, 4 * HEADER_WORDS)
            self._target_buf = cl.Buffer(self.context, mf.READ_ONLY, 4 * 8)
            self._output_buf = cl.Buffer(self.context, mf.WRITE_ONLY, 4 * self.capacity)
        except cl.Error as e:
            raise DeviceError(f"OpenCL setup failed: {e}") from e

        self._build(lane_group_size)
        self._host_output = np.zeros(self.capacity, dtype=np.uint32)
        log.info(
            "OpenCL device ready: %s (capacity=%d, lane_group_size=%d)",
            ", ".join(d.name for d in self.context.devices),
            self.capacity,
            self.lane_group_size,
        )

    @property
    def max_lane_group_size(self) -> int:
        return min(d.max_work_group_size for d in self.context.devices)

    def _build(self, lane_group_size: int) -> None:
        try:
            program = cl.Program(self.context, kernel_source(lane_group_size)).build()
            self._kernel = cl.Kernel(program, "search")
        except cl.Error as e:
            raise DeviceError(f"kernel build failed (lane_group_size={lane_group_size}): {e}") from e
        self.lane_group_size = int(lane_group_size)

    def autotune(self, dispatches: int = 20) -> int:
        """
        Pick the fastest lane group size.

        Each power of two from 32 up to the device work-group limit is built and
        timed over `dispatches` full-capacity dispatches; the fastest one is kept
        and returned. A device whose limit is below 32 keeps its current size.
        """
        limit = self.max_lane_group_size
        self.upload((0,) * HEADER_WORDS, (0,) * 8)

        best_size = self.lane_group_size
        best_time = float("inf")
        size = 32
        while size <= limit:
            self._build(size)
            t0 = time.perf_counter()
            for _ in range(dispatches):
                self.dispatch(self.capacity)
            self.readback()
            elapsed = time.perf_counter() - t0
            log.info("autotune lane_group_size=%d: %.3f ms", size, elapsed * 1e3)
            if elapsed < best_time:
                best_time = elapsed
                best_size = size
            size *= 2

        self._build(best_size)
        log.info("autotune picked lane_group_size=%d", best_size)
        return best_size

    def upload(self, header_words: Sequence[int], target_words: Sequence[int]) -> None:
        _check_upload(header_words, target_words)
        try:
            cl.enqueue_copy(self.queue, self._header_buf, np.asarray(header_words, dtype=np.uint32))
            cl.enqueue_copy(self.queue, self._target_buf, np.asarray(target_words, dtype=np.uint32))
        except cl.Error as e:
            raise DeviceError(f"header upload failed: {e}") from e

    def dispatch(self, lane_count: int) -> None:
        if not 0 < lane_count <= self.capacity:
            raise DeviceError(f"lane_count {lane_count} outside output capacity {self.capacity}")
        groups = -(-lane_count // self.lane_group_size)
        try:
            self._kernel(
                self.queue,
                (groups * self.lane_group_size,),
                (self.lane_group_size,),
                self._header_buf,
                self._target_buf,
                np.uint32(lane_count),
                self._output_buf,
            )
        except cl.Error as e:
            raise DeviceError(f"kernel dispatch failed: {e}") from e

    def readback(self) -> np.ndarray:
        try:
            cl.enqueue_copy(self.queue, self._host_output, self._output_buf)
        except cl.Error as e:
            raise DeviceError(f"output readback failed: {e}") from e
        return self._host_output.copy()
