import pytest

from harvester.config import MinerConfig, config_from_dict, load_config
from harvester.errors import ConfigurationError

CONFIG = """
[rpc]
url = "http://10.0.0.2:18443"
user = "miner"
password = "hunter2"
timeout_s = 3

[search]
backend = "host"
lanes_per_dispatch = 4096

[bridge]
max_attempts = 7
backoff_s = 0.5

[log]
level = "DEBUG"
"""


def test_load_config_from_toml(tmp_path):
    path = tmp_path / "harvester.toml"
    path.write_text(CONFIG)
    cfg = load_config(str(path))

    assert cfg.rpc_url == "http://10.0.0.2:18443"
    assert cfg.rpc_user == "miner"
    assert cfg.rpc_password == "hunter2"
    assert cfg.timeout_s == 3.0 and isinstance(cfg.timeout_s, float)
    assert cfg.lanes_per_dispatch == 4096
    assert cfg.max_attempts == 7
    assert cfg.backoff_s == 0.5
    assert cfg.log_level == "DEBUG"
    # untouched keys keep their defaults
    assert cfg.backoff_max_s == MinerConfig().backoff_max_s
    assert cfg.lane_group_size == 0
    assert cfg.autotune is False


def test_empty_config_is_defaults():
    assert config_from_dict({}) == MinerConfig()


@pytest.mark.parametrize(
    "cfg, key",
    [
        ({"search": {"backend": "fpga"}}, "search.backend"),
        ({"search": {"lanes_per_dispatch": 0}}, "search.lanes_per_dispatch"),
        ({"bridge": {"max_attempts": "many"}}, "bridge.max_attempts"),
        ({"rpc": {"timeout_s": -1}}, "rpc.timeout_s"),
    ],
)
def test_invalid_values_are_rejected(cfg, key):
    with pytest.raises(ConfigurationError) as excinfo:
        config_from_dict(cfg)
    assert excinfo.value.key == key


def test_missing_or_broken_file(tmp_path):
    with pytest.raises(ConfigurationError):
        load_config(str(tmp_path / "nope.toml"))

    bad = tmp_path / "bad.toml"
    bad.write_text("[rpc\nurl = ")
    with pytest.raises(ConfigurationError):
        load_config(str(bad))


def test_override_skips_unset_values():
    cfg = MinerConfig().override(backend=None, lanes_per_dispatch=128, rpc_url=None)
    assert cfg.lanes_per_dispatch == 128
    assert cfg.backend == "host"
    assert cfg.rpc_url == MinerConfig().rpc_url

    with pytest.raises(ConfigurationError):
        cfg.override(backend="asic")


def test_search_device_options(tmp_path):
    path = tmp_path / "harvester.toml"
    path.write_text('[search]\nbackend = "opencl"\ndevice_type = "cpu"\nautotune = true\nlane_group_size = 128\n')
    cfg = load_config(str(path))
    assert cfg.backend == "opencl"
    assert cfg.device_type == "cpu"
    assert cfg.autotune is True
    assert cfg.lane_group_size == 128

    with pytest.raises(ConfigurationError) as excinfo:
        config_from_dict({"search": {"autotune": "yes"}})
    assert excinfo.value.key == "search.autotune"
    with pytest.raises(ConfigurationError) as excinfo:
        config_from_dict({"search": {"device_type": "fpga"}})
    assert excinfo.value.key == "search.device_type"
