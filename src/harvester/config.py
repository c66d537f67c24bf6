from __future__ import annotations

from dataclasses import dataclass, fields, replace
from typing import Any, Dict

import toml

from .errors import ConfigurationError

BACKENDS = ("host", "opencl")
DEVICE_TYPES = ("gpu", "cpu", "any")


@dataclass(frozen=True)
class MinerConfig:
    # [rpc]
    rpc_url: str = "http://127.0.0.1:8332"
    rpc_user: str = ""
    rpc_password: str = ""
    timeout_s: float = 10.0
    poll_interval_s: float = 1.0

    # [search]
    backend: str = "host"
    lanes_per_dispatch: int = 1 << 16
    lane_group_size: int = 0  # 0: the device's own default
    device_index: int = 0
    device_type: str = "gpu"
    autotune: bool = False

    # [bridge]
    max_attempts: int = 5
    backoff_s: float = 1.0
    backoff_max_s: float = 30.0
    log_every_seconds: float = 5.0

    # [log]
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if self.backend not in BACKENDS:
            raise ConfigurationError("search.backend", f"must be one of {', '.join(BACKENDS)}")
        if not 0 < self.lanes_per_dispatch <= 0xFFFFFFFF:
            raise ConfigurationError("search.lanes_per_dispatch", "must be in 1..2^32-1")
        if self.device_type not in DEVICE_TYPES:
            raise ConfigurationError("search.device_type", f"must be one of {', '.join(DEVICE_TYPES)}")
        if self.lane_group_size < 0:
            raise ConfigurationError("search.lane_group_size", "must be >= 0")
        if self.max_attempts <= 0:
            raise ConfigurationError("bridge.max_attempts", "must be > 0")
        if self.timeout_s <= 0:
            raise ConfigurationError("rpc.timeout_s", "must be > 0")

    def override(self, **values: Any) -> "MinerConfig":
        """Copy with every non-None value applied (CLI flags over file values)."""
        return replace(self, **{k: v for k, v in values.items() if v is not None})


# Which TOML table each field is read from.
_SECTIONS = {
    "rpc": ("rpc_url", "rpc_user", "rpc_password", "timeout_s", "poll_interval_s"),
    "search": (
        "backend", "lanes_per_dispatch", "lane_group_size", "device_index", "device_type", "autotune",
    ),
    "bridge": ("max_attempts", "backoff_s", "backoff_max_s", "log_every_seconds"),
    "log": ("log_level",),
}

_TABLE_KEYS = {
    "rpc_url": "url",
    "rpc_user": "user",
    "rpc_password": "password",
    "log_level": "level",
}


def _cfg_get(cfg: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    cur: Any = cfg
    for k in keys:
        if not isinstance(cur, dict) or k not in cur:
            return default
        cur = cur[k]
    return cur


def _as_bool(raw: Any) -> bool:
    if not isinstance(raw, bool):
        raise ValueError("not a boolean")
    return raw


def config_from_dict(cfg: Dict[str, Any]) -> MinerConfig:
    types = {f.name: f.type for f in fields(MinerConfig)}
    values: Dict[str, Any] = {}
    for section, names in _SECTIONS.items():
        for name in names:
            key = _TABLE_KEYS.get(name, name)
            raw = _cfg_get(cfg, section, key)
            if raw is None:
                continue
            kind = {"int": int, "float": float, "str": str, "bool": _as_bool}[types[name]]
            try:
                values[name] = kind(raw)
            except (TypeError, ValueError) as e:
                raise ConfigurationError(f"{section}.{key}", f"expected {types[name]}, got {raw!r}") from e
    return MinerConfig(**values)


def load_config(path: str) -> MinerConfig:
    try:
        cfg = toml.load(path)
    except (OSError, toml.TomlDecodeError) as e:
        raise ConfigurationError(path, str(e)) from e
    return config_from_dict(cfg)
