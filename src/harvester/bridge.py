"""
Block-notification bridge.

Two threads meet here: a listener that calls `notify()` for every "new block"
event, and the search loop running `run()` / `run_once()`. They share one
monotonically increasing generation counter. The search loop checks that its
generation is still current before every dispatch and before submitting, so
a newer notification costs at most one wasted dispatch.

    IDLE -> AWAITING_TEMPLATE -> SEARCHING -> FOUND | SUPERSEDED | ERROR_FATAL -> IDLE
"""

from __future__ import annotations

import enum
import logging
import threading
import time
from typing import Callable, Iterable, Optional, Protocol

from .engine import NonceRange, NonceSearchEngine, Solution
from .errors import HarvesterError, SupersededError, TransportError
from .header import BlockTemplate, encode

log = logging.getLogger(__name__)


class TemplateSource(Protocol):
    def get_template(self) -> BlockTemplate: ...


class SolutionSink(Protocol):
    def submit(self, solution: Solution) -> None: ...


class BridgeState(enum.Enum):
    IDLE = "idle"
    AWAITING_TEMPLATE = "awaiting_template"
    SEARCHING = "searching"
    FOUND = "found"
    SUPERSEDED = "superseded"
    ERROR_FATAL = "error_fatal"


class Generation:
    """Lock-guarded counter; bumped once per template notification."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._value = 0

    def bump(self) -> int:
        with self._lock:
            self._value += 1
            return self._value

    @property
    def current(self) -> int:
        with self._lock:
            return self._value

    def is_current(self, generation: int) -> bool:
        return generation == self.current


class BridgeOrchestrator:
    def __init__(
        self,
        engine: NonceSearchEngine,
        templates: TemplateSource,
        sink: SolutionSink,
        lane_count: Optional[int] = None,
        max_attempts: int = 5,
        backoff_s: float = 1.0,
        backoff_max_s: float = 30.0,
        log_every_seconds: float = 5.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_attempts <= 0:
            raise ValueError("max_attempts must be > 0")
        self.engine = engine
        self.templates = templates
        self.sink = sink
        self.lane_count = int(lane_count or engine.capacity)
        if not 0 < self.lane_count <= engine.capacity:
            raise ValueError(f"lane_count must be in 1..{engine.capacity}")
        self.max_attempts = max_attempts
        self.backoff_s = backoff_s
        self.backoff_max_s = backoff_max_s
        self.log_every_seconds = log_every_seconds
        self.sleep = sleep

        self.generation = Generation()
        self.state = BridgeState.IDLE
        self._wake = threading.Event()
        self._stop = threading.Event()
        self._failure: Optional[BaseException] = None
        # last generation worked to completion; a late wake-up for it is ignored
        self._handled = 0

        # Stats
        self.dispatches = 0
        self.hashes = 0
        self.solutions = 0
        self.superseded = 0
        self.t0 = time.time()
        self._last_log = self.t0

    # -- called from other threads -------------------------------------

    def notify(self) -> int:
        """A new block was observed: start a new generation and wake the search loop."""
        generation = self.generation.bump()
        self._wake.set()
        return generation

    def fail(self, exc: BaseException) -> None:
        """Report a fatal error from the listener; `run()` re-raises it."""
        self._failure = exc
        self._wake.set()

    def stop(self) -> None:
        self._stop.set()
        self._wake.set()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    # -- search loop ---------------------------------------------------

    def run(self) -> None:
        while not self._stop.is_set():
            self.run_once()

    def run_once(self, timeout: Optional[float] = None) -> BridgeState:
        """
        Wait for a notification and work the newest generation to an outcome.

        Returns FOUND, SUPERSEDED or IDLE (timeout / stop). Fatal errors are
        raised after the state is set to ERROR_FATAL.
        """
        if not self._wake.wait(timeout):
            return BridgeState.IDLE
        self._wake.clear()
        if self._failure is not None:
            self.state = BridgeState.ERROR_FATAL
            raise self._failure
        if self._stop.is_set():
            self.state = BridgeState.IDLE
            return BridgeState.IDLE

        generation = self.generation.current
        if generation == self._handled:
            self.state = BridgeState.IDLE
            return BridgeState.IDLE
        try:
            solution = self._mine(generation)
        except SupersededError as e:
            self.superseded += 1
            log.info("[BRIDGE] %s; dropping its work", e)
            self.state = BridgeState.IDLE
            return BridgeState.SUPERSEDED
        except Exception as e:
            self.state = BridgeState.ERROR_FATAL
            log.error("[BRIDGE] fatal: %s: %s", type(e).__name__, e)
            raise

        self._handled = generation
        self.state = BridgeState.IDLE
        if solution is None:
            return BridgeState.IDLE
        return BridgeState.FOUND

    def _mine(self, generation: int) -> Optional[Solution]:
        self.state = BridgeState.AWAITING_TEMPLATE
        template = self._with_retry(generation, "template fetch", self.templates.get_template)
        log.info(
            "[BRIDGE] generation %d: template time=%d bits=%#010x",
            generation, template.time, template.bits,
        )

        self.state = BridgeState.SEARCHING
        solution = self._search(template, generation)
        if solution is None:
            return None

        self.state = BridgeState.FOUND
        self._with_retry(generation, "submission", lambda: self.sink.submit(solution))
        self.solutions += 1
        log.info("[BRIDGE] submitted nonce=%#010x hash=%s", solution.nonce, solution.hash_hex)
        return solution

    def _search(self, template: BlockTemplate, generation: int) -> Optional[Solution]:
        target = template.target_words
        while True:
            words = encode(template, 0)
            for nonce_range in NonceRange.sweep(0, self.lane_count):
                self._ensure_current(generation)
                if self._stop.is_set():
                    return None
                nonce = self.engine.search_range(words, nonce_range, target)
                self.dispatches += 1
                self.hashes += nonce_range.lane_count
                self._log_stats()
                if nonce is not None:
                    self._ensure_current(generation)
                    return self.engine.solution(words, nonce, generation)
            # nonce space exhausted for this header: roll the time field
            template = template.with_time(template.time + 1)
            log.info("[BRIDGE] nonce space exhausted, rolling time to %d", template.time)

    def _ensure_current(self, generation: int) -> None:
        current = self.generation.current
        if generation != current:
            raise SupersededError(generation, current)

    def _with_retry(self, generation: int, what: str, fn: Callable):
        backoff = self.backoff_s
        for attempt in range(1, self.max_attempts + 1):
            self._ensure_current(generation)
            try:
                return fn()
            except TransportError as e:
                if attempt == self.max_attempts:
                    raise TransportError(e.endpoint, f"{what} failed after {attempt} attempts") from e
                log.warning("[NET] %s failed (%d/%d): %s", what, attempt, self.max_attempts, e)
                self.sleep(backoff)
                backoff = min(self.backoff_max_s, backoff * 2.0)

    def _log_stats(self) -> None:
        now = time.time()
        if (now - self._last_log) < self.log_every_seconds:
            return
        dt = max(1e-9, now - self.t0)
        mhps = (self.hashes / dt) / 1e6
        log.info(
            "[STATS] mh/s=%.3f dispatches=%d solutions=%d superseded=%d",
            mhps, self.dispatches, self.solutions, self.superseded,
        )
        self._last_log = now


class NotificationListener(threading.Thread):
    """Feeds every event from `events` into `orchestrator.notify()`."""

    def __init__(self, events: Iterable[object], orchestrator: BridgeOrchestrator):
        super().__init__(name="harvester-listener", daemon=True)
        self.events = events
        self.orchestrator = orchestrator

    def run(self) -> None:
        try:
            for _ in self.events:
                if self.orchestrator.stopped:
                    break
                generation = self.orchestrator.notify()
                log.debug("[NET] notification -> generation %d", generation)
        except HarvesterError as e:
            log.error("[NET] notification feed failed: %s", e)
            self.orchestrator.fail(e)
