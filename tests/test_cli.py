import hashlib

import pytest

from harvester.cli import main, make_engine
from harvester.config import MinerConfig


def test_selftest(capsys):
    assert main(["--selftest"]) == 0
    out = capsys.readouterr().out
    assert hashlib.sha256(hashlib.sha256(bytes(80)).digest()).hexdigest() in out


def test_bench_reports_throughput(capsys):
    assert main(["--bench", "1", "--lanes", "256", "--log-level", "WARNING"]) == 0
    out = capsys.readouterr().out
    assert "'mhps'" in out
    assert "'trials': 256" in out


def test_config_file_feeds_cli(tmp_path, capsys):
    path = tmp_path / "harvester.toml"
    path.write_text('[search]\nlanes_per_dispatch = 128\n')
    assert main(["--config", str(path), "--bench", "2"]) == 0
    assert "'trials': 256" in capsys.readouterr().out


def test_nothing_to_do():
    assert main([]) == 2


def test_host_engine_honors_lane_group_size():
    assert make_engine(MinerConfig(lanes_per_dispatch=512, lane_group_size=128)).device.lane_group_size == 128
    assert make_engine(MinerConfig(lanes_per_dispatch=512)).device.lane_group_size == 4096


def test_autotune_requires_opencl_backend(capsys):
    with pytest.raises(SystemExit) as excinfo:
        main(["--autotune", "--bench", "1"])
    assert excinfo.value.code == 2
    assert "opencl" in capsys.readouterr().err
