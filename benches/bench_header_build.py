from __future__ import annotations

from harvester.header import BlockTemplate, block_hash_hex, decode, encode, header_bytes


def test_bench_encode_and_hash_header(benchmark):
    template = BlockTemplate(
        version=0x20000000,
        prev_block_hash=b"\xaa" * 32,
        merkle_root=bytes(range(32)),
        time=0x5F5E1000,
        bits=0x1D00FFFF,
    )

    def work():
        words = encode(template, 1)
        decode(words)
        block_hash_hex(header_bytes(template, 1))

    benchmark(work)
