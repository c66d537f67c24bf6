from __future__ import annotations

from harvester.device import HostLaneDevice
from harvester.header import header_to_words
from harvester.sha256 import double_sha256_words, midstate, sha256d
from harvester.target import target_to_words


def test_bench_sha256d_80bytes(benchmark):
    data = b"\x00" * 80
    benchmark(sha256d, data)


def test_bench_scalar_kernel_with_midstate(benchmark):
    words = header_to_words(b"\x00" * 80)
    mid = midstate(words)
    benchmark(double_sha256_words, words, mid)


def test_bench_host_lane_dispatch(benchmark):
    device = HostLaneDevice(capacity=4096)
    device.upload(header_to_words(b"\x00" * 80), target_to_words(0))

    def work():
        device.dispatch(4096)

    benchmark(work)
