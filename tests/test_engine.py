import numpy as np
import pytest

from harvester.device import HostLaneDevice
from harvester.engine import NONCE_SPACE, NonceRange, NonceSearchEngine, collect
from harvester.errors import DeviceError, ValidationError
from harvester.header import BlockTemplate, encode, header_bytes
from harvester.sha256 import sha256d
from harvester.target import MAX_TARGET, target_to_words

TEMPLATE = BlockTemplate(
    version=0x20000000,
    prev_block_hash=bytes(range(32)),
    merkle_root=bytes(range(32, 64)),
    time=1700000000,
    bits=0x1D00FFFF,
)
WORDS = encode(TEMPLATE, 0)


def _hash_value(nonce: int) -> int:
    return int.from_bytes(sha256d(header_bytes(TEMPLATE, nonce))[::-1], "big")


def _plant(nonces):
    """Lowest-hash nonce among `nonces` and its hash, used as an exact target."""
    values = {n % NONCE_SPACE: _hash_value(n % NONCE_SPACE) for n in nonces}
    nonce = min(values, key=values.get)
    return nonce, values[nonce]


@pytest.fixture
def engine():
    return NonceSearchEngine(HostLaneDevice(capacity=10_000))


def test_finds_planted_nonce_and_misses_disjoint_range(engine):
    # nonce 0 doubles as the "no hit" slot value, so it is never a planted answer
    planted, value = _plant(range(1, 10_000))
    target = target_to_words(value)

    assert engine.search(WORDS, 0, 10_000, target) == planted

    base = 10_000
    while any(_hash_value(n) <= value for n in range(base, base + 10_000)):
        base += 10_000
    assert engine.search(WORDS, base, 10_000, target) is None


def test_lowest_lane_wins_when_several_pass(engine):
    lanes = range(100, 356)
    values = sorted((_hash_value(n), n) for n in lanes)
    target_value = values[4][0]
    passing = [n for n in lanes if _hash_value(n) <= target_value]
    assert len(passing) == 5

    assert engine.search(WORDS, 100, 256, target_to_words(target_value)) == min(passing)
    assert engine.search(WORDS, 500, 64, target_to_words(MAX_TARGET)) == 500


def test_nonce_range_wraps_past_2_32(engine):
    base = 0xFFFFFFF0
    planted, value = _plant(n for n in range(base, base + 32) if n % NONCE_SPACE)
    assert engine.search(WORDS, base, 32, target_to_words(value)) == planted


def test_results_do_not_persist_across_calls(engine):
    assert engine.search(WORDS, 500, 64, target_to_words(MAX_TARGET)) == 500
    assert engine.search(WORDS, 500, 64, target_to_words(0)) is None


def test_lane_count_bounded_by_capacity(engine):
    with pytest.raises(ValueError):
        engine.search(WORDS, 0, 10_001, target_to_words(MAX_TARGET))
    with pytest.raises(ValueError):
        engine.search(WORDS, 0, 0, target_to_words(MAX_TARGET))


def test_solution_carries_header_and_generation(engine):
    nonce = engine.search(WORDS, 77, 16, target_to_words(MAX_TARGET))
    sol = engine.solution(WORDS, nonce, generation=3)
    assert sol.nonce == 77
    assert sol.header == header_bytes(TEMPLATE, 77)
    assert sol.generation == 3
    assert sol.hash_hex == sha256d(sol.header)[::-1].hex()


class _ScriptedDevice:
    """Returns a fixed output buffer regardless of what was dispatched."""

    def __init__(self, output):
        self.capacity = len(output)
        self.output = np.asarray(output, dtype=np.uint32)

    def upload(self, header_words, target_words):
        pass

    def dispatch(self, lane_count):
        pass

    def readback(self):
        return self.output.copy()


def test_reported_nonce_failing_host_check_raises():
    planted, value = _plant(range(1, 64))
    impostor = next(n for n in range(1, 64) if _hash_value(n) > value)
    out = [0] * 64
    out[impostor - 1] = impostor
    engine = NonceSearchEngine(_ScriptedDevice(out))
    with pytest.raises(ValidationError):
        engine.search(WORDS, 1, 64, target_to_words(value))


def test_nonce_in_wrong_slot_raises():
    output = np.zeros(8, dtype=np.uint32)
    output[2] = 1234
    with pytest.raises(ValidationError):
        collect(output, WORDS, 0, 8, target_to_words(MAX_TARGET))


def test_collect_ignores_slots_past_lane_count():
    output = np.zeros(8, dtype=np.uint32)
    output[6] = 6
    assert collect(output, WORDS, 0, 4, target_to_words(MAX_TARGET)) is None


def test_device_errors_propagate():
    class Broken(_ScriptedDevice):
        def dispatch(self, lane_count):
            raise DeviceError("queue lost")

    engine = NonceSearchEngine(Broken([0] * 8))
    with pytest.raises(DeviceError):
        engine.search(WORDS, 0, 8, target_to_words(MAX_TARGET))


def test_host_device_rejects_bad_buffers():
    device = HostLaneDevice(capacity=8)
    with pytest.raises(DeviceError):
        device.dispatch(4)
    with pytest.raises(DeviceError):
        device.upload(WORDS[:31], target_to_words(0))
    device.upload(WORDS, target_to_words(0))
    with pytest.raises(DeviceError):
        device.dispatch(9)


def test_nonce_range_next_and_contains():
    r = NonceRange(0xFFFFFF00, 0x200)
    assert r.next() == NonceRange(0x100, 0x200)
    assert 0xFFFFFF00 in r
    assert 0x0FF in r
    assert 0x100 not in r


def test_sweep_covers_space_without_overlap():
    ranges = list(NonceRange.sweep(0x10, 1 << 30))
    assert len(ranges) == 4
    assert sum(r.lane_count for r in ranges) == NONCE_SPACE
    for a, b in zip(ranges, ranges[1:]):
        assert a.next().base == b.base

    uneven = list(NonceRange.sweep(0, 3 << 30))
    assert [r.lane_count for r in uneven] == [3 << 30, 1 << 30]
