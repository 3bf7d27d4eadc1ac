"""
Hazard Fusion Engine

The single source of truth for "how safe is the car right now?".

Observations from all sensor processors land in one inbox. A single owner
thread drains it and is the only code that touches the state, the decay
deadline and the subscriber list:

    processors --report()--> inbox --owner thread--> HazardState --> subscribers

Fusion rules:
- same hazard type already active -> confidence boosted (+0.1, capped at 1.0)
- otherwise the newest observation replaces type and confidence
- has_hazard = confidence >= hazard_threshold
- sources accumulate over the hazard episode
- no observation for decay_seconds -> state returns to idle
"""

import logging
import queue
import threading
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

from .config import FusionConfig
from .schema import HazardObservation, HazardState

logger = logging.getLogger(__name__)

StateCallback = Callable[[HazardState], None]


@dataclass(frozen=True)
class _Observe:
    hazard_type: str
    confidence: float
    source: str


@dataclass(frozen=True)
class _Subscribe:
    callback: StateCallback


@dataclass(frozen=True)
class _Unsubscribe:
    callback: StateCallback


_STOP = object()


class HazardFusionEngine:
    """
    Actor-style owner of the fused HazardState.
    """

    def __init__(self, config: Optional[FusionConfig] = None,
                 clock: Callable[[], float] = time.time):
        self.config = config or FusionConfig()
        self.clock = clock

        self._state = HazardState.idle()
        self._subscribers: List[StateCallback] = []
        self._deadline: Optional[float] = None

        self._inbox: "queue.Queue" = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._lifecycle_lock = threading.Lock()
        self._pending = 0
        self._pending_cond = threading.Condition()

    # ---------- Lifecycle ----------

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        with self._lifecycle_lock:
            if self.is_running:
                return
            self._thread = threading.Thread(target=self._run, name="hazard-fusion", daemon=True)
            self._thread.start()
            logger.info("Hazard fusion engine started")

    def stop(self, timeout: float = 2.0) -> None:
        """Stop the owner thread and reset to idle. Queued observations are applied first."""
        with self._lifecycle_lock:
            thread = self._thread
            if thread is None:
                return
            self._inbox.put(_STOP)
            thread.join(timeout)
            if thread.is_alive():
                logger.warning("Hazard fusion engine did not stop within %.1fs", timeout)
                return
            self._thread = None
            self._drain_after_stop()
            self._deadline = None
            self._set_state(HazardState.idle())
            logger.info("Hazard fusion engine stopped")

    # ---------- Producers ----------

    def report(self, hazard_type: str, confidence: float, source: str) -> bool:
        """
        Queue one observation for fusion.

        Args:
            hazard_type: e.g. "pothole"
            confidence: 0-1; values outside are clamped, non-positive ignored
            source: sensor origin, e.g. "imu"

        Returns:
            False if the engine is not running
        """
        if not self.is_running:
            logger.debug("Engine not running, rejecting %s from %s", hazard_type, source)
            return False
        if confidence <= 0:
            logger.debug("Ignoring zero-confidence %s from %s", hazard_type, source)
            return True

        self._send(_Observe(hazard_type, min(float(confidence), 1.0), source))
        return True

    def observer(self, source: str) -> Callable[[HazardObservation], None]:
        """Callback for SensorProcessor.start that tags observations with source."""
        def _on_observation(observation: HazardObservation) -> None:
            self.report(observation.type, observation.confidence, source)
        return _on_observation

    # ---------- Consumers ----------

    def snapshot(self) -> HazardState:
        return self._state

    def subscribe(self, callback: StateCallback) -> Callable[[], None]:
        """
        Receive the current state, then every published change.

        Callbacks run on the engine thread and must not block.

        Returns:
            Function that removes the subscription
        """
        if self.is_running:
            self._send(_Subscribe(callback))
        else:
            self._add_subscriber(callback)

        def _unsubscribe() -> None:
            if self.is_running:
                self._send(_Unsubscribe(callback))
            elif callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    def wait_processed(self, timeout: Optional[float] = None) -> bool:
        """Block until every queued message has been handled."""
        with self._pending_cond:
            return self._pending_cond.wait_for(lambda: self._pending == 0, timeout)

    # ---------- Owner thread ----------

    def _send(self, message) -> None:
        with self._pending_cond:
            self._pending += 1
        self._inbox.put(message)

    def _done(self) -> None:
        with self._pending_cond:
            self._pending -= 1
            if self._pending == 0:
                self._pending_cond.notify_all()

    def _run(self) -> None:
        while True:
            timeout = None
            if self._deadline is not None:
                timeout = max(0.0, self._deadline - time.monotonic())

            try:
                message = self._inbox.get(timeout=timeout)
            except queue.Empty:
                self._decay()
                continue

            if message is _STOP:
                break

            try:
                self._handle(message)
            except Exception:
                logger.exception("Hazard fusion failed on %r", message)
            finally:
                self._done()

    def _handle(self, message) -> None:
        if isinstance(message, _Observe):
            self._fuse(message)
        elif isinstance(message, _Subscribe):
            self._add_subscriber(message.callback)
        elif isinstance(message, _Unsubscribe):
            if message.callback in self._subscribers:
                self._subscribers.remove(message.callback)

    def _fuse(self, obs: _Observe) -> None:
        prev = self._state
        confidence = obs.confidence
        if prev.has_hazard and prev.type == obs.hazard_type:
            # Corroborating detection
            confidence = min(1.0, prev.confidence + self.config.boost)

        state = HazardState(
            has_hazard=confidence >= self.config.hazard_threshold,
            type=obs.hazard_type,
            confidence=confidence,
            sources=prev.sources | {obs.source},
            last_updated=self.clock(),
        )

        # Fresh observation re-arms the decay
        self._deadline = time.monotonic() + self.config.decay_seconds
        if state.has_hazard and not (prev.has_hazard and prev.type == state.type):
            logger.warning("Hazard: %s (%.2f) from %s", state.type, state.confidence, obs.source)
        self._set_state(state)

    def _decay(self) -> None:
        if self._deadline is None or time.monotonic() < self._deadline:
            return
        self._deadline = None
        logger.info("Hazard cleared: %s", self._state.type)
        self._set_state(HazardState.idle())

    def _add_subscriber(self, callback: StateCallback) -> None:
        self._subscribers.append(callback)
        self._notify(callback, self._state)

    def _set_state(self, state: HazardState) -> None:
        self._state = state
        for callback in list(self._subscribers):
            self._notify(callback, state)

    @staticmethod
    def _notify(callback: StateCallback, state: HazardState) -> None:
        try:
            callback(state)
        except Exception:
            logger.exception("Hazard subscriber failed")

    def _drain_after_stop(self) -> None:
        # Messages that raced with stop(); subscriptions are kept
        discarded = 0
        while True:
            try:
                message = self._inbox.get_nowait()
            except queue.Empty:
                break
            if message is _STOP:
                continue
            if isinstance(message, _Observe):
                discarded += 1
            else:
                self._handle(message)
            self._done()
        if discarded:
            logger.warning("Discarded %d observations received during shutdown", discarded)
