"""
Bitcoin Core JSON-RPC adapters for the bridge.

`BitcoinRpc` is a thin JSON-RPC 1.0 client over a `requests.Session`.
Connection problems, timeouts and 5xx answers without a JSON body are
TransportError (the bridge retries those). An error object returned by the
node is RpcError and is not retried.

The adapters:
  - RpcTemplateSource: getblocktemplate -> BlockTemplate, with a caller-supplied merkle root
  - RpcSolutionSink:   submitheader(solution header)
  - BestBlockPoller:   yields whenever getbestblockhash changes
"""

from __future__ import annotations

import itertools
import logging
import threading
import time
from typing import Any, Callable, Dict, Iterator, List, Optional

import requests

from .engine import Solution
from .errors import RpcError, TransportError
from .header import BlockTemplate

log = logging.getLogger(__name__)


class BitcoinRpc:
    def __init__(
        self,
        url: str,
        user: Optional[str] = None,
        password: Optional[str] = None,
        timeout_s: float = 10.0,
        session: Optional[requests.Session] = None,
    ):
        self.url = url
        self.timeout_s = timeout_s
        self.session = session or requests.Session()
        if user is not None:
            self.session.auth = (user, password or "")
        self._ids = itertools.count(1)
        self._id_lock = threading.Lock()

    def call(self, method: str, params: Optional[List[Any]] = None) -> Any:
        with self._id_lock:
            rpc_id = next(self._ids)
        payload = {"jsonrpc": "1.0", "id": rpc_id, "method": method, "params": params or []}

        try:
            resp = self.session.post(self.url, json=payload, timeout=self.timeout_s)
        except requests.RequestException as e:
            raise TransportError(self.url, f"{method}: {e}") from e

        # bitcoind answers RPC errors with HTTP 500 and a JSON body
        try:
            data = resp.json()
        except ValueError as e:
            raise TransportError(self.url, f"{method}: HTTP {resp.status_code} without JSON body") from e
        if not isinstance(data, dict):
            raise TransportError(self.url, f"{method}: unexpected reply {data!r}")

        err = data.get("error")
        if err:
            if isinstance(err, dict):
                raise RpcError(method, err.get("code"), str(err.get("message")))
            raise RpcError(method, None, str(err))
        if resp.status_code >= 400:
            raise TransportError(self.url, f"{method}: HTTP {resp.status_code}")
        if data.get("id") != rpc_id:
            raise TransportError(self.url, f"{method}: reply id {data.get('id')!r}, expected {rpc_id}")
        return data.get("result")

    def getblocktemplate(self) -> Dict[str, Any]:
        return self.call("getblocktemplate", [{"rules": ["segwit"]}])

    def getbestblockhash(self) -> str:
        return self.call("getbestblockhash")

    def submitheader(self, header_hex: str) -> None:
        self.call("submitheader", [header_hex])


class RpcTemplateSource:
    """Template fetch over getblocktemplate; merkle root comes from the caller."""

    def __init__(self, rpc: BitcoinRpc, merkle_root: Callable[[Dict[str, Any]], bytes]):
        self.rpc = rpc
        self.merkle_root = merkle_root

    def get_template(self) -> BlockTemplate:
        result = self.rpc.getblocktemplate()
        if not isinstance(result, dict):
            raise TransportError(self.rpc.url, f"getblocktemplate: unexpected result {result!r}")
        try:
            return BlockTemplate.from_getblocktemplate(result, self.merkle_root(result))
        except ValueError as e:
            raise RpcError("getblocktemplate", None, f"malformed template: {e}") from e


class RpcSolutionSink:
    def __init__(self, rpc: BitcoinRpc):
        self.rpc = rpc

    def submit(self, solution: Solution) -> None:
        log.info("[RPC] submitheader nonce=%#010x hash=%s", solution.nonce, solution.hash_hex)
        self.rpc.submitheader(solution.header.hex())


class BestBlockPoller:
    """
    Notification source: yields the new tip hash whenever it changes.

    The first successful poll always yields. Transport failures are retried
    with a doubling backoff; after `max_attempts` consecutive failures the
    last TransportError is raised out of the iterator.
    """

    def __init__(
        self,
        rpc: BitcoinRpc,
        interval_s: float = 1.0,
        max_attempts: int = 5,
        backoff_s: float = 1.0,
        backoff_max_s: float = 30.0,
        stop_event: Optional[threading.Event] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.rpc = rpc
        self.interval_s = interval_s
        self.max_attempts = max_attempts
        self.backoff_s = backoff_s
        self.backoff_max_s = backoff_max_s
        self.stop_event = stop_event or threading.Event()
        self.sleep = sleep

    def __iter__(self) -> Iterator[str]:
        last: Optional[str] = None
        failures = 0
        backoff = self.backoff_s
        while not self.stop_event.is_set():
            try:
                tip = self.rpc.getbestblockhash()
            except TransportError as e:
                failures += 1
                if failures >= self.max_attempts:
                    raise
                log.warning("[NET] tip poll failed (%d/%d): %s", failures, self.max_attempts, e)
                self.sleep(backoff)
                backoff = min(self.backoff_max_s, backoff * 2.0)
                continue

            failures = 0
            backoff = self.backoff_s
            if tip != last:
                log.info("[NET] new tip %s", tip)
                last = tip
                yield tip
            self.sleep(self.interval_s)
