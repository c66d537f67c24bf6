from __future__ import annotations

import struct
from dataclasses import dataclass, replace
from typing import Any, Dict, Sequence, Tuple

from .sha256 import bswap32, sha256d
from .target import target_from_bits, target_to_words

HEADER_SIZE = 80
HEADER_WORDS = 32
NONCE_WORD = 19

# SHA-256 padding of an 80-byte message: 0x80 marker, zero fill, 640-bit length.
_PADDING_WORDS = (0x80000000,) + (0,) * 10 + (640,)

_FIXED = struct.Struct("<I32s32sII")


def _le_bytes_from_hex_hash(hex_32bytes: str) -> bytes:
    """
    RPC sends hashes as hex (human/big-endian). Internal header uses little-endian bytes.
    """
    b = bytes.fromhex(hex_32bytes)
    if len(b) != 32:
        raise ValueError("expected 32-byte hash hex")
    return b[::-1]


@dataclass(frozen=True)
class BlockTemplate:
    """
    Every header field except the nonce.

    Hashes are held in header byte order (the reverse of their display hex).
    A template is never patched: the next notification replaces it.
    """
    version: int
    prev_block_hash: bytes
    merkle_root: bytes
    time: int
    bits: int

    def __post_init__(self) -> None:
        if len(self.prev_block_hash) != 32:
            raise ValueError("prev_block_hash must be 32 bytes")
        if len(self.merkle_root) != 32:
            raise ValueError("merkle_root must be 32 bytes")
        for name in ("version", "time", "bits"):
            value = getattr(self, name)
            if not 0 <= value <= 0xFFFFFFFF:
                raise ValueError(f"{name} must be a 32-bit value")

    @property
    def target(self) -> int:
        return target_from_bits(self.bits)

    @property
    def target_words(self) -> Tuple[int, ...]:
        return target_to_words(self.target)

    def with_time(self, time: int) -> "BlockTemplate":
        return replace(self, time=time & 0xFFFFFFFF)

    @staticmethod
    def from_getblocktemplate(result: Dict[str, Any], merkle_root: bytes) -> "BlockTemplate":
        """
        Build a template from a `getblocktemplate` result.

        `merkle_root` is supplied by the caller in header byte order; transaction
        assembly is not done here.
        """
        try:
            return BlockTemplate(
                version=int(result["version"]) & 0xFFFFFFFF,
                prev_block_hash=_le_bytes_from_hex_hash(result["previousblockhash"]),
                merkle_root=bytes(merkle_root),
                time=int(result["curtime"]),
                bits=int(result["bits"], 16),
            )
        except KeyError as e:
            raise ValueError(f"getblocktemplate result missing {e.args[0]!r}") from e


def header_bytes(template: BlockTemplate, nonce: int) -> bytes:
    """
    Build 80-byte Bitcoin header:
    version(4 LE) || prevhash(32) || merkleroot(32) || time(4 LE) || bits(4 LE) || nonce(4 LE)
    """
    return _FIXED.pack(
        template.version,
        template.prev_block_hash,
        template.merkle_root,
        template.time,
        template.bits,
    ) + struct.pack("<I", nonce & 0xFFFFFFFF)


def header_to_words(header80: bytes) -> Tuple[int, ...]:
    if len(header80) != HEADER_SIZE:
        raise ValueError("header must be 80 bytes")
    return struct.unpack(">20I", header80) + _PADDING_WORDS


def words_to_header(words: Sequence[int]) -> bytes:
    if len(words) != HEADER_WORDS:
        raise ValueError("header must be exactly 32 words")
    if tuple(int(w) for w in words[NONCE_WORD + 1:]) != _PADDING_WORDS:
        raise ValueError("header words carry malformed SHA-256 padding")
    return struct.pack(">20I", *(int(w) for w in words[:20]))


def encode_nonce(nonce: int) -> int:
    """Nonce value as it sits in word 19: little-endian bytes read big-endian."""
    return bswap32(nonce & 0xFFFFFFFF)


def decode_nonce(word: int) -> int:
    return bswap32(word & 0xFFFFFFFF)


def encode(template: BlockTemplate, nonce: int) -> Tuple[int, ...]:
    """Template plus nonce as the 32 padded big-endian words the kernel consumes."""
    return header_to_words(header_bytes(template, nonce))


def decode(words: Sequence[int]) -> Tuple[BlockTemplate, int]:
    header = words_to_header(words)
    version, prev_block_hash, merkle_root, time, bits = _FIXED.unpack(header[:76])
    template = BlockTemplate(
        version=version,
        prev_block_hash=prev_block_hash,
        merkle_root=merkle_root,
        time=time,
        bits=bits,
    )
    return template, decode_nonce(int(words[NONCE_WORD]))


def with_nonce(words: Sequence[int], nonce: int) -> Tuple[int, ...]:
    out = list(words)
    out[NONCE_WORD] = encode_nonce(nonce)
    return tuple(out)


def block_hash_hex(header80: bytes) -> str:
    """Display form of the header hash (byte-reversed digest)."""
    return sha256d(header80)[::-1].hex()
