from __future__ import annotations

import hashlib
from typing import Any, Sequence, Tuple

# Every function below is element-wise: a "word" is either a Python int in
# [0, 2^32) or a numpy uint32 array holding one word per lane. Host
# re-verification runs them on ints, HostLaneDevice runs them on lane vectors.

MASK32 = 0xFFFFFFFF

SHA256_K = (
    0x428A2F98, 0x71374491, 0xB5C0FBCF, 0xE9B5DBA5, 0x3956C25B, 0x59F111F1, 0x923F82A4, 0xAB1C5ED5,
    0xD807AA98, 0x12835B01, 0x243185BE, 0x550C7DC3, 0x72BE5D74, 0x80DEB1FE, 0x9BDC06A7, 0xC19BF174,
    0xE49B69C1, 0xEFBE4786, 0x0FC19DC6, 0x240CA1CC, 0x2DE92C6F, 0x4A7484AA, 0x5CB0A9DC, 0x76F988DA,
    0x983E5152, 0xA831C66D, 0xB00327C8, 0xBF597FC7, 0xC6E00BF3, 0xD5A79147, 0x06CA6351, 0x14292967,
    0x27B70A85, 0x2E1B2138, 0x4D2C6DFC, 0x53380D13, 0x650A7354, 0x766A0ABB, 0x81C2C92E, 0x92722C85,
    0xA2BFE8A1, 0xA81A664B, 0xC24B8B70, 0xC76C51A3, 0xD192E819, 0xD6990624, 0xF40E3585, 0x106AA070,
    0x19A4C116, 0x1E376C08, 0x2748774C, 0x34B0BCB5, 0x391C0CB3, 0x4ED8AA4A, 0x5B9CCA4F, 0x682E6FF3,
    0x748F82EE, 0x78A5636F, 0x84C87814, 0x8CC70208, 0x90BEFFFA, 0xA4506CEB, 0xBEF9A3F7, 0xC67178F2,
)

SHA256_H0 = (
    0x6A09E667,
    0xBB67AE85,
    0x3C6EF372,
    0xA54FF53A,
    0x510E527F,
    0x9B05688C,
    0x1F83D9AB,
    0x5BE0CD19,
)

# Second-pass block for a 32-byte message: digest words, 0x80 marker, bit length 256.
DIGEST_PADDING = (0x80000000, 0, 0, 0, 0, 0, 0, 256)

Word = Any


def sha256d(data: bytes) -> bytes:
    """
    Bitcoin-style double-SHA256.
    Returns raw 32-byte digest.
    """
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def _add(*words: Word) -> Word:
    total: Word = 0
    for w in words:
        total = (total + w) & MASK32
    return total


def _rotr(x: Word, n: int) -> Word:
    return ((x >> n) | (x << (32 - n))) & MASK32


def _ch(x: Word, y: Word, z: Word) -> Word:
    return (x & y) ^ ((x ^ MASK32) & z)


def _maj(x: Word, y: Word, z: Word) -> Word:
    return (x & y) ^ (x & z) ^ (y & z)


def _bsig0(x: Word) -> Word:
    return _rotr(x, 2) ^ _rotr(x, 13) ^ _rotr(x, 22)


def _bsig1(x: Word) -> Word:
    return _rotr(x, 6) ^ _rotr(x, 11) ^ _rotr(x, 25)


def _ssig0(x: Word) -> Word:
    return _rotr(x, 7) ^ _rotr(x, 18) ^ (x >> 3)


def _ssig1(x: Word) -> Word:
    return _rotr(x, 17) ^ _rotr(x, 19) ^ (x >> 10)


def bswap32(x: Word) -> Word:
    return (
        ((x & 0xFF) << 24)
        | ((x & 0xFF00) << 8)
        | ((x >> 8) & 0xFF00)
        | ((x >> 24) & 0xFF)
    ) & MASK32


def compress(state: Sequence[Word], block: Sequence[Word]) -> Tuple[Word, ...]:
    """One SHA-256 compression of a 16-word block into an 8-word state."""
    if len(state) != 8 or len(block) != 16:
        raise ValueError("compress expects an 8-word state and a 16-word block")

    w = list(block)
    for i in range(16, 64):
        w.append(_add(_ssig1(w[i - 2]), w[i - 7], _ssig0(w[i - 15]), w[i - 16]))

    a, b, c, d, e, f, g, h = state
    for i in range(64):
        t1 = _add(h, _bsig1(e), _ch(e, f, g), SHA256_K[i], w[i])
        t2 = _add(_bsig0(a), _maj(a, b, c))
        h = g
        g = f
        f = e
        e = _add(d, t1)
        d = c
        c = b
        b = a
        a = _add(t1, t2)

    return tuple(_add(s, x) for s, x in zip(state, (a, b, c, d, e, f, g, h)))


def midstate(words: Sequence[Word]) -> Tuple[Word, ...]:
    """State after the first 64 header bytes; shared by every nonce of a header."""
    return compress(SHA256_H0, words[:16])


def double_sha256_words(words: Sequence[Word], mid: Sequence[Word] | None = None) -> Tuple[Word, ...]:
    """
    Double SHA-256 of a padded 80-byte header given as 32 big-endian words.

    Returns the final state: the digest as 8 big-endian words, in the same
    order `sha256d` emits its bytes. `mid` may carry a precomputed midstate.
    """
    if len(words) != 32:
        raise ValueError("header must be exactly 32 words")
    state = midstate(words) if mid is None else tuple(mid)
    first = compress(state, words[16:32])
    return compress(SHA256_H0, tuple(first) + DIGEST_PADDING)


def hash_words(state: Sequence[Word]) -> Tuple[Word, ...]:
    """
    Reorder a digest into the Bitcoin hash value, most-significant word first.

    Bitcoin reads the 32 digest bytes as a little-endian integer, so the most
    significant word is the byte-swapped last digest word.
    """
    return tuple(bswap32(state[7 - i]) for i in range(8))


def digest_bytes(state: Sequence[int]) -> bytes:
    return b"".join(int(w).to_bytes(4, "big") for w in state)
