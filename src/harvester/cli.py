from __future__ import annotations

import argparse
import logging
import time
from typing import Any, Dict, Tuple

from .bridge import BridgeOrchestrator, NotificationListener
from .config import BACKENDS, DEVICE_TYPES, MinerConfig, load_config
from .device import HostLaneDevice
from .engine import NonceSearchEngine
from .errors import HarvesterError
from .header import header_to_words
from .rpc import BestBlockPoller, BitcoinRpc, RpcSolutionSink, RpcTemplateSource
from .sha256 import digest_bytes, double_sha256_words, sha256d
from .target import target_from_difficulty, target_to_words

log = logging.getLogger("harvester")


def _preparse_config(argv: list[str] | None) -> Tuple[MinerConfig, list[str]]:
    p0 = argparse.ArgumentParser(add_help=False)
    p0.add_argument("--config", default=None, help="Path to TOML config (optional).")
    ns, rest = p0.parse_known_args(argv)
    if ns.config:
        return load_config(ns.config), rest
    return MinerConfig(), rest


def make_engine(cfg: MinerConfig) -> NonceSearchEngine:
    kw: Dict[str, Any] = {}
    if cfg.lane_group_size:
        kw["lane_group_size"] = cfg.lane_group_size

    if cfg.backend == "opencl":
        from .opencl import OpenCLDevice

        device = OpenCLDevice(
            cfg.lanes_per_dispatch,
            device_index=cfg.device_index,
            device_type=cfg.device_type,
            **kw,
        )
        if cfg.autotune:
            device.autotune()
    else:
        device = HostLaneDevice(cfg.lanes_per_dispatch, **kw)
    return NonceSearchEngine(device)


def selftest() -> bool:
    header = b"\x00" * 80
    kernel = digest_bytes(double_sha256_words(header_to_words(header)))
    oracle = sha256d(header)
    print(kernel.hex())
    return kernel == oracle


def bench(cfg: MinerConfig, dispatches: int) -> Dict[str, Any]:
    engine = make_engine(cfg)
    words = header_to_words(b"\x01" * 80)
    # Easy target so dispatches report "shares" (throughput, not real difficulty)
    target = target_to_words(target_from_difficulty(1 / 256))

    found = 0
    t0 = time.time()
    for i in range(dispatches):
        if engine.search(words, i * engine.capacity, engine.capacity, target) is not None:
            found += 1
    dt = max(1e-9, time.time() - t0)
    trials = dispatches * engine.capacity
    return {
        "backend": cfg.backend,
        "trials": trials,
        "seconds": dt,
        "mhps": (trials / dt) / 1e6,
        "found_dispatches": found,
    }


def run_bridge(cfg: MinerConfig, merkle_root_hex: str) -> int:
    merkle_root = bytes.fromhex(merkle_root_hex)[::-1]
    if len(merkle_root) != 32:
        raise SystemExit("--merkle-root must be 32 bytes of hex")

    rpc = BitcoinRpc(cfg.rpc_url, cfg.rpc_user or None, cfg.rpc_password, timeout_s=cfg.timeout_s)
    orchestrator = BridgeOrchestrator(
        make_engine(cfg),
        RpcTemplateSource(rpc, lambda _result: merkle_root),
        RpcSolutionSink(rpc),
        max_attempts=cfg.max_attempts,
        backoff_s=cfg.backoff_s,
        backoff_max_s=cfg.backoff_max_s,
        log_every_seconds=cfg.log_every_seconds,
    )
    poller = BestBlockPoller(
        rpc,
        interval_s=cfg.poll_interval_s,
        max_attempts=cfg.max_attempts,
        backoff_s=cfg.backoff_s,
        backoff_max_s=cfg.backoff_max_s,
    )
    listener = NotificationListener(poller, orchestrator)
    listener.start()
    log.info("[NET] polling %s", cfg.rpc_url)
    try:
        orchestrator.run()
    except KeyboardInterrupt:
        pass
    finally:
        poller.stop_event.set()
        orchestrator.stop()
    return 0


def main(argv: list[str] | None = None) -> int:
    cfg, rest = _preparse_config(argv)

    p = argparse.ArgumentParser(prog="harvester")
    p.add_argument("--config", default=None, help="Path to TOML config (optional).")

    p.add_argument("--selftest", action="store_true", help="Check the kernel against hashlib and exit.")
    p.add_argument("--bench", type=int, metavar="N", default=None, help="Time N dispatches and exit.")
    p.add_argument("--run", action="store_true", help="Poll the node, search each new template, submit headers.")

    p.add_argument("--backend", choices=BACKENDS, default=None, help="Compute device.")
    p.add_argument("--lanes", type=int, default=None, help="Lanes per dispatch (output buffer capacity).")
    p.add_argument("--lane-group-size", type=int, default=None, help="Lanes per group (OpenCL work-group size, host chunk size).")
    p.add_argument("--device-type", choices=DEVICE_TYPES, default=None, help="OpenCL device type to select.")
    p.add_argument(
        "--autotune", action="store_true", default=None, help="Time each lane group size on the OpenCL device and keep the fastest."
    )
    p.add_argument("--rpc-url", default=None, help="bitcoind JSON-RPC URL.")
    p.add_argument("--rpc-user", default=None, help="RPC username.")
    p.add_argument("--rpc-password", default=None, help="RPC password.")
    p.add_argument("--merkle-root", default=None, help="Merkle root (display hex) for --run.")
    p.add_argument("--log-level", default=None, help="Logging level (DEBUG, INFO, ...).")

    args = p.parse_args(rest)

    try:
        cfg = cfg.override(
            backend=args.backend,
            lanes_per_dispatch=args.lanes,
            lane_group_size=args.lane_group_size,
            device_type=args.device_type,
            autotune=args.autotune,
            rpc_url=args.rpc_url,
            rpc_user=args.rpc_user,
            rpc_password=args.rpc_password,
            log_level=args.log_level,
        )
    except HarvesterError as e:
        p.error(str(e))
    if cfg.autotune and cfg.backend != "opencl":
        p.error("--autotune requires the opencl backend")

    logging.basicConfig(
        level=getattr(logging, cfg.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.selftest:
        return 0 if selftest() else 1

    if args.bench is not None:
        res = bench(cfg, args.bench)
        print(res)
        return 0

    if args.run:
        if not args.merkle_root:
            p.error("--run requires --merkle-root")
        try:
            return run_bridge(cfg, args.merkle_root)
        except HarvesterError as e:
            log.error("%s: %s", type(e).__name__, e)
            return 1

    print("Nothing to do. Try --selftest, --bench N or --run.")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
