"""
Copy-trading automation: Streaming Connection Manager

Owns at most one live subscription to the master terminal and mirrors its
state (account information, open positions) into an in-process view.

State machine:
    disconnected -> connecting -> synchronizing -> connected <-> degraded
    any -> disconnected   (stop, fatal error, circuit open, connection lost)

Reconnects use exponential backoff (base doubling up to a ceiling, plus
jitter). After `max_reconnect_attempts` consecutive failures the circuit
opens and automatic reconnects stop until `reset_circuit()` is called or the
cool-down elapses (checked by `keep_alive()`). Auth/permission failures are
fatal: no retry, terminal `disconnected` with the error recorded.

The state lock only guards field reads/writes; connect, event reads and
close always run outside it.
"""

import logging
import random
import threading
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Deque, Dict, List, Optional

from core.exceptions import (
    StreamingError,
    StreamingFatal,
    StreamingTransient,
    TelemetryRejected,
    TelemetryUnavailable,
)
from core.models import (
    AccountStats,
    ClosedTrade,
    Position,
    StreamingPhase,
    StreamingState,
    utcnow,
)
from core.telemetry import TelemetryBackend, stats_from_payload

logger = logging.getLogger(__name__)

EVENT_SYNCHRONIZED = "synchronized"
EVENT_ACCOUNT_INFORMATION = "account_information"
EVENT_POSITIONS = "positions"
EVENT_POSITION_UPDATED = "position_updated"
EVENT_POSITION_CLOSED = "position_closed"
EVENT_HEARTBEAT = "heartbeat"
EVENT_DISCONNECTED = "disconnected"


@dataclass
class StreamEvent:
    kind: str
    payload: Any = None
    at: datetime = field(default_factory=utcnow)


class StreamSource(ABC):
    """One upstream subscription. A new instance is created per connection attempt."""

    @abstractmethod
    def connect(self, account_id: str) -> None:
        """Open the subscription. Raises StreamingFatal or StreamingTransient."""

    @abstractmethod
    def next_event(self, timeout: float) -> Optional[StreamEvent]:
        """Next event, or None if nothing arrived within `timeout` seconds."""

    @abstractmethod
    def close(self) -> None:
        """Release the subscription. Must be safe to call from another thread."""


class PollingStreamSource(StreamSource):
    """
    Stream source built on the REST telemetry backend.

    Polls account information and positions every `poll_interval_seconds`
    and emits them as events; the first complete poll is followed by a
    `synchronized` event.
    """

    def __init__(self, backend: TelemetryBackend, poll_interval_seconds: float = 10.0):
        self.backend = backend
        self.poll_interval_seconds = poll_interval_seconds
        self._account_id: Optional[str] = None
        self._pending: Deque[StreamEvent] = deque()
        self._closed = threading.Event()
        self._synchronized = False
        self._next_poll_at: Optional[datetime] = None

    @staticmethod
    def _translate(error: Exception) -> StreamingError:
        if isinstance(error, TelemetryRejected):
            return StreamingFatal(f"Terminal rejected subscription: {error}", error)
        return StreamingTransient(f"Terminal unreachable: {error}", error)

    def connect(self, account_id: str) -> None:
        self._account_id = account_id
        self._closed.clear()
        try:
            self.backend.get_account_info(account_id)
        except (TelemetryRejected, TelemetryUnavailable) as e:
            raise self._translate(e) from e
        self._next_poll_at = utcnow()

    def _poll(self) -> None:
        assert self._account_id is not None
        try:
            info = self.backend.get_account_info(self._account_id)
            positions = self.backend.get_positions(self._account_id)
        except (TelemetryRejected, TelemetryUnavailable) as e:
            raise self._translate(e) from e
        self._pending.append(StreamEvent(EVENT_ACCOUNT_INFORMATION, info))
        self._pending.append(StreamEvent(EVENT_POSITIONS, positions))
        if not self._synchronized:
            self._synchronized = True
            self._pending.append(StreamEvent(EVENT_SYNCHRONIZED))

    def next_event(self, timeout: float) -> Optional[StreamEvent]:
        if self._closed.is_set():
            return StreamEvent(EVENT_DISCONNECTED)
        if self._pending:
            return self._pending.popleft()

        wait = 0.0
        if self._next_poll_at is not None:
            wait = max(0.0, (self._next_poll_at - utcnow()).total_seconds())
        if wait > timeout:
            self._closed.wait(timeout)
            return None
        if wait > 0 and self._closed.wait(wait):
            return StreamEvent(EVENT_DISCONNECTED)

        self._poll()
        self._next_poll_at = utcnow() + timedelta(seconds=self.poll_interval_seconds)
        return self._pending.popleft() if self._pending else None

    def close(self) -> None:
        self._closed.set()


class StreamingConnectionManager:
    """
    Process-wide owner of the streaming subscription.

    Create one per process at start-up and inject it where needed; `start`,
    `stop`, `keep_alive` and `reset_circuit` are safe to call concurrently.
    """

    def __init__(
        self,
        source_factory: Callable[[], StreamSource],
        account_id: Optional[str] = None,
        audit: Optional[Any] = None,
        metrics: Optional[Any] = None,
        base_delay_seconds: float = 5.0,
        max_delay_seconds: float = 300.0,
        jitter_seconds: float = 1.0,
        max_reconnect_attempts: int = 5,
        circuit_cooldown_seconds: float = 900.0,
        health_window_seconds: float = 120.0,
        sync_timeout_seconds: float = 60.0,
        event_timeout_seconds: float = 1.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._source_factory = source_factory
        self.account_id = account_id
        self._audit = audit
        self._metrics = metrics
        self.base_delay_seconds = base_delay_seconds
        self.max_delay_seconds = max_delay_seconds
        self.jitter_seconds = jitter_seconds
        self.max_reconnect_attempts = max_reconnect_attempts
        self.circuit_cooldown_seconds = circuit_cooldown_seconds
        self.health_window_seconds = health_window_seconds
        self.sync_timeout_seconds = sync_timeout_seconds
        self.event_timeout_seconds = event_timeout_seconds
        self._clock = clock

        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._source: Optional[StreamSource] = None
        self._in_progress = False
        self._fatal = False
        self._state = StreamingState()

        self._account_info: Optional[Dict[str, Any]] = None
        self._positions: Dict[str, Position] = {}
        self._cache_updated_at: Optional[datetime] = None
        self._listeners: List[Callable[[ClosedTrade], None]] = []

    # ---- logging helpers ---------------------------------------------------

    def _log(self, event: str, **details) -> None:
        logger.info(f"Streaming {event}: {details}" if details else f"Streaming {event}")
        if self._audit is not None:
            self._audit.log_event(event, details)
        if self._metrics is not None:
            status = self.get_status()
            self._metrics.record_streaming_state(status.is_connected, status.health_score, status.is_circuit_open)

    # ---- status ------------------------------------------------------------

    def _health_score(self, now: datetime) -> int:
        state = self._state
        if state.is_circuit_open or state.start_time is None:
            return 0
        score = 100 - 10 * state.reconnect_attempts - 5 * state.consecutive_failures
        if self._is_stale(now):
            score -= 20
        return max(0, min(100, score))

    def _is_stale(self, now: datetime) -> bool:
        last = self._state.last_event
        if last is None:
            return False
        return (now - last).total_seconds() > self.health_window_seconds

    def get_status(self) -> StreamingState:
        """Copy of the last known state. Never raises."""
        now = self._clock()
        with self._lock:
            state = replace(self._state)
            state.health_score = self._health_score(now)
            state.is_healthy = (
                state.phase == StreamingPhase.CONNECTED
                and not state.is_circuit_open
                and not self._is_stale(now)
            )
        return state

    @property
    def is_running(self) -> bool:
        thread = self._thread
        return thread is not None and thread.is_alive()

    # ---- lifecycle ---------------------------------------------------------

    def start(self, account_id: Optional[str] = None) -> StreamingState:
        """
        Start streaming in a background thread.

        No-op (returns current status) when a connection is already running or
        being established, or while the circuit is open and cooling down.
        """
        now = self._clock()
        with self._lock:
            if self._in_progress:
                logger.info("Streaming start ignored: connection already running")
                return_status = True
            elif self._thread is not None and self._thread.is_alive():
                logger.warning("Streaming start ignored: previous connection is still shutting down")
                return_status = True
            elif self._state.is_circuit_open and not self._cooldown_elapsed(now):
                logger.warning("Streaming start ignored: circuit breaker is open")
                return_status = True
            else:
                return_status = False
                if account_id:
                    self.account_id = account_id
                if not self.account_id:
                    raise ValueError("Streaming account id is required")
                circuit_was_open = self._state.is_circuit_open
                self._in_progress = True
                self._fatal = False
                # Fresh event per run; a stopped run keeps its own set event
                self._stop_event = threading.Event()
                self._state = StreamingState(
                    phase=StreamingPhase.CONNECTING,
                    account_id=self.account_id,
                    start_time=now,
                )
                self._thread = threading.Thread(
                    target=self._run, name="streaming-connection", daemon=True
                )
                thread = self._thread
        if return_status:
            return self.get_status()

        if circuit_was_open:
            self._log("circuit_reset", reason="cooldown elapsed")
        self._log("streaming_started", account_id=self.account_id)
        thread.start()
        return self.get_status()

    def stop(self, timeout: float = 10.0) -> StreamingState:
        """Release the subscription and clear the streaming state."""
        with self._lock:
            self._stop_event.set()
            source = self._source
            thread = self._thread
            was_active = self._in_progress or self._state.phase != StreamingPhase.DISCONNECTED

        if source is not None:
            source.close()
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        lingering = thread is not None and thread.is_alive()
        if lingering:
            logger.warning(f"Streaming thread did not exit within {timeout}s; new starts wait for it")

        with self._lock:
            self._state = StreamingState()
            self._source = None
            if not lingering:
                # A lingering thread clears these itself on exit
                self._thread = None
                self._in_progress = False
            self._account_info = None
            self._positions = {}
            self._cache_updated_at = None

        if was_active:
            self._log("streaming_stopped")
        return self.get_status()

    def join(self, timeout: Optional[float] = None) -> None:
        thread = self._thread
        if thread is not None:
            thread.join(timeout)

    def reset_circuit(self) -> StreamingState:
        """Manual intervention: close the breaker and clear failure counters."""
        with self._lock:
            self._state.is_circuit_open = False
            self._state.circuit_opened_at = None
            self._state.consecutive_failures = 0
            self._state.reconnect_attempts = 0
            self._state.error = None
            self._fatal = False
        self._log("circuit_reset", reason="manual")
        return self.get_status()

    def _cooldown_elapsed(self, now: datetime) -> bool:
        opened = self._state.circuit_opened_at
        if opened is None:
            return True
        return (now - opened).total_seconds() >= self.circuit_cooldown_seconds

    def keep_alive(self) -> StreamingState:
        """
        Periodic check: restart the stream when it is absent.

        Honours the circuit breaker (restarts only after the cool-down) and
        never restarts after a fatal error.
        """
        with self._lock:
            running = self._in_progress
            fatal = self._fatal
        if running:
            return self.get_status()
        if fatal:
            logger.warning("Streaming keep-alive skipped: fatal error requires manual start")
            return self.get_status()
        if not self.account_id:
            logger.info("Streaming keep-alive skipped: no account configured")
            return self.get_status()
        return self.start()

    # ---- live view ---------------------------------------------------------

    def add_closed_trade_listener(self, listener: Callable[[ClosedTrade], None]) -> None:
        with self._lock:
            self._listeners.append(listener)

    def _cache_fresh(self, account_id: str, max_age_seconds: float, now: datetime) -> bool:
        if account_id != self._state.account_id or not self._state.is_connected:
            return False
        if self._cache_updated_at is None:
            return False
        return (now - self._cache_updated_at).total_seconds() <= max_age_seconds

    def cached_account_stats(self, account_id: str, max_age_seconds: float) -> Optional[AccountStats]:
        now = self._clock()
        with self._lock:
            if not self._cache_fresh(account_id, max_age_seconds, now) or self._account_info is None:
                return None
            info = dict(self._account_info)
            count = len(self._positions)
            fetched_at = self._cache_updated_at
        try:
            stats = stats_from_payload(account_id, info, [], fetched_at, source="stream")
        except TelemetryUnavailable:
            return None
        return replace(stats, open_positions=count)

    def cached_positions(self, account_id: str, max_age_seconds: float) -> Optional[List[Position]]:
        now = self._clock()
        with self._lock:
            if not self._cache_fresh(account_id, max_age_seconds, now):
                return None
            return list(self._positions.values())

    # ---- connection loop ---------------------------------------------------

    def _next_delay(self, attempt: int) -> float:
        delay = self.base_delay_seconds * (2 ** max(0, attempt - 1))
        if self.jitter_seconds > 0:
            delay += random.uniform(0, self.jitter_seconds)
        return min(delay, self.max_delay_seconds)

    def _set_phase(self, phase: StreamingPhase) -> None:
        with self._lock:
            if not self._stop_event.is_set():
                self._state.phase = phase

    def _run(self) -> None:
        try:
            while not self._stop_event.is_set():
                try:
                    self._connect_and_consume()
                    return  # stop requested
                except StreamingFatal as e:
                    with self._lock:
                        if self._stop_event.is_set():
                            return
                        self._state.phase = StreamingPhase.DISCONNECTED
                        self._state.error = str(e)
                        self._fatal = True
                    self._log("error", fatal=True, error=e)
                    return
                except StreamingError as e:
                    if self._stop_event.is_set():
                        return
                    if not self._on_failure(e):
                        return
                except Exception as e:
                    if self._stop_event.is_set():
                        return
                    logger.exception("Unexpected streaming failure")
                    if not self._on_failure(e):
                        return
        finally:
            self._close_source()
            with self._lock:
                self._in_progress = False
                if self._thread is threading.current_thread():
                    self._thread = None

    def _close_source(self) -> None:
        with self._lock:
            source, self._source = self._source, None
        if source is not None:
            source.close()

    def _on_failure(self, error: Exception) -> bool:
        """Record a failed attempt. Returns False once the circuit has opened."""
        self._close_source()
        now = self._clock()
        with self._lock:
            if self._stop_event.is_set():
                return False
            was_connected = self._state.is_connected
            self._state.phase = StreamingPhase.DISCONNECTED
            self._state.error = str(error)
            self._state.consecutive_failures += 1
            failures = self._state.consecutive_failures
            open_circuit = failures >= self.max_reconnect_attempts
            if open_circuit:
                self._state.is_circuit_open = True
                self._state.circuit_opened_at = now
            else:
                self._state.reconnect_attempts += 1
                self._state.total_reconnects += 1
                attempt = self._state.reconnect_attempts

        if was_connected:
            self._log("connection_lost", error=error)
        if self._metrics is not None:
            self._metrics.record_reconnect("failed")
        if open_circuit:
            self._log("circuit_opened", consecutive_failures=failures, error=error)
            return False

        delay = self._next_delay(attempt)
        self._log("reconnect_scheduled", attempt=attempt, delay_seconds=round(delay, 3), error=error)
        return not self._stop_event.wait(delay)

    def _connect_and_consume(self) -> None:
        source = self._source_factory()
        with self._lock:
            if self._stop_event.is_set():
                stopped = True
            else:
                stopped = False
                self._source = source
                self._state.phase = StreamingPhase.CONNECTING
                account_id = self._state.account_id
        if stopped:
            source.close()
            return

        source.connect(account_id)
        self._set_phase(StreamingPhase.SYNCHRONIZING)

        deadline = self._clock() + timedelta(seconds=self.sync_timeout_seconds)
        synchronized = False
        while not self._stop_event.is_set():
            event = source.next_event(self.event_timeout_seconds)
            now = self._clock()
            if event is None:
                if not synchronized and now >= deadline:
                    raise StreamingTransient("Timed out waiting for terminal synchronization")
                if synchronized:
                    self._check_degraded(now)
                continue

            if event.kind == EVENT_DISCONNECTED:
                if self._stop_event.is_set():
                    return
                raise StreamingTransient("Terminal reported disconnection")

            self._apply_event(event, now, synchronized)

            if event.kind == EVENT_SYNCHRONIZED and not synchronized:
                synchronized = True
                self._on_synchronized(now)

    def _on_synchronized(self, now: datetime) -> None:
        with self._lock:
            if self._stop_event.is_set():
                return
            restored = self._state.reconnect_attempts > 0
            self._state.phase = StreamingPhase.CONNECTED
            self._state.reconnect_attempts = 0
            self._state.consecutive_failures = 0
            self._state.error = None
            self._state.last_event = now
        if self._metrics is not None and restored:
            self._metrics.record_reconnect("restored")
        self._log("connection_restored" if restored else "synchronized", account_id=self.account_id)

    def _check_degraded(self, now: datetime) -> None:
        with self._lock:
            if self._stop_event.is_set():
                return
            degrade = self._state.phase == StreamingPhase.CONNECTED and self._is_stale(now)
            if degrade:
                self._state.phase = StreamingPhase.DEGRADED
            last = self._state.last_event
        if degrade:
            self._log("connection_degraded", last_event=last)

    def _apply_event(self, event: StreamEvent, now: datetime, synchronized: bool) -> None:
        closed: List[ClosedTrade] = []
        recovered = False
        with self._lock:
            if self._stop_event.is_set():
                return
            self._state.last_event = now
            if self._state.phase == StreamingPhase.DEGRADED:
                self._state.phase = StreamingPhase.CONNECTED
                recovered = True
            account_id = self._state.account_id or ""

            if event.kind == EVENT_ACCOUNT_INFORMATION and isinstance(event.payload, dict):
                self._account_info = dict(event.payload)
                self._cache_updated_at = now
            elif event.kind == EVENT_POSITIONS and isinstance(event.payload, list):
                current = {}
                for raw in event.payload:
                    position = Position.from_payload(raw)
                    current[position.id] = position
                if synchronized:
                    for position_id in set(self._positions) - set(current):
                        closed.append(self._closed_trade(account_id, self._positions[position_id], now))
                self._positions = current
                self._cache_updated_at = now
            elif event.kind == EVENT_POSITION_UPDATED and isinstance(event.payload, dict):
                position = Position.from_payload(event.payload)
                self._positions[position.id] = position
                self._cache_updated_at = now
            elif event.kind == EVENT_POSITION_CLOSED and isinstance(event.payload, dict):
                position_id = str(event.payload.get("id") or "")
                known = self._positions.pop(position_id, None)
                if known is None:
                    known = Position.from_payload(event.payload)
                trade = self._closed_trade(account_id, known, now)
                if event.payload.get("profit") is not None:
                    trade.profit = float(event.payload["profit"])
                closed.append(trade)
                self._cache_updated_at = now
            listeners = list(self._listeners)

        if recovered:
            self._log("connection_recovered")
        for trade in closed:
            for listener in listeners:
                try:
                    listener(trade)
                except Exception:
                    logger.exception(f"Closed-trade listener failed for position {trade.trade_id}")

    @staticmethod
    def _closed_trade(account_id: str, position: Position, now: datetime) -> ClosedTrade:
        return ClosedTrade(
            account_id=account_id,
            symbol=position.symbol,
            side=position.type,
            volume=position.volume,
            profit=position.profit,
            trade_id=position.id,
            close_time=now,
        )
