"""
Heartbeat engine: collect metrics → send report → classify → reschedule.

Loop invariants:
  - one report in flight at a time; the next cycle starts only after the
    previous one is classified and its wait has elapsed
  - only 401/403 (or stop()) ends the loop; everything else retries
  - replies drained for a report are re-queued unless the server accepted it

Backoff: 1s, 2s, 4s ... capped at 300s, reset on success.
Every wait gets ±5s jitter, floored at 5s.
"""
from __future__ import annotations

import asyncio
import math
import random
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Protocol

import httpx

from sparebox_daemon.core.messages import IncomingMessage, MessageReply
from sparebox_daemon.core.metrics import DISK_UNKNOWN, MetricsCollector
from sparebox_daemon.core.replies import PendingReplies
from sparebox_daemon.core.transport import ReportTransport, TransportResponse
from sparebox_daemon.utils.logger import get_logger

log = get_logger("heartbeat")

MIN_BACKOFF_MS = 1_000
MAX_BACKOFF_MS = 300_000
MIN_SERVER_INTERVAL_MS = 30_000
JITTER_MS = 5_000
MIN_DELAY_MS = 5_000


class EngineState(str, Enum):
    RUNNING = "running"
    STOPPED = "stopped"


class OutcomeKind(str, Enum):
    SUCCESS = "success"
    FATAL = "fatal"          # auth rejected
    THROTTLED = "throttled"  # 429
    TRANSIENT = "transient"  # 5xx, unexpected status, network error


@dataclass
class BackoffState:
    delay_ms: int = MIN_BACKOFF_MS
    consecutive_failures: int = 0

    def record_success(self) -> None:
        self.delay_ms = MIN_BACKOFF_MS
        self.consecutive_failures = 0

    def record_failure(self) -> int:
        """Return the wait for this failure; the next one doubles (capped)."""
        delay = self.delay_ms
        self.delay_ms = min(self.delay_ms * 2, MAX_BACKOFF_MS)
        self.consecutive_failures += 1
        return delay

    def current_state(self) -> tuple[int, int]:
        return self.delay_ms, self.consecutive_failures


@dataclass
class ReportOutcome:
    ok: bool
    ts: float
    commands: list[Any] = field(default_factory=list)
    next_heartbeat_ms: int = 0

    @classmethod
    def from_json(cls, data: Any) -> "ReportOutcome":
        if not isinstance(data, dict):
            data = {}
        commands = data.get("commands")
        try:
            next_ms = float(data.get("nextHeartbeatMs") or 0)
        except (TypeError, ValueError):
            next_ms = 0.0
        if not math.isfinite(next_ms) or next_ms < 0:
            next_ms = 0.0
        return cls(
            ok=bool(data.get("ok", True)),
            ts=data.get("ts") or time.time() * 1000,
            commands=commands if isinstance(commands, list) else [],
            next_heartbeat_ms=int(next_ms),
        )


@dataclass
class CycleResult:
    kind: OutcomeKind
    wait_ms: int
    status_code: int | None = None
    outcome: ReportOutcome | None = None


def parse_retry_after(value: str | None) -> int | None:
    """Retry-After seconds → ms. HTTP-date form is not supported (None)."""
    if not value:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    ms = seconds * 1000
    if not math.isfinite(ms) or ms < 0:
        return None
    return int(ms)


def success_interval(next_heartbeat_ms: int, default_ms: int) -> int:
    if next_heartbeat_ms > 0:
        return max(next_heartbeat_ms, MIN_SERVER_INTERVAL_MS)
    return default_ms


def jittered_delay(interval_ms: int, rng: random.Random | None = None) -> int:
    rng = rng or random
    return max(interval_ms + rng.randint(-JITTER_MS, JITTER_MS), MIN_DELAY_MS)


def classify_response(
    resp: TransportResponse,
    backoff: BackoffState,
    default_interval_ms: int,
) -> CycleResult:
    """Map one HTTP response onto an outcome + chosen wait. Mutates backoff."""
    status = resp.status_code

    if 200 <= status < 300:
        backoff.record_success()
        try:
            outcome = ReportOutcome.from_json(resp.json())
        except ValueError:
            log.warning("Heartbeat accepted (%d) but response body is not JSON", status)
            outcome = ReportOutcome(ok=True, ts=time.time() * 1000)
        wait = success_interval(outcome.next_heartbeat_ms, default_interval_ms)
        return CycleResult(OutcomeKind.SUCCESS, wait, status, outcome)

    if status in (401, 403):
        return CycleResult(OutcomeKind.FATAL, 0, status)

    if status == 429:
        wait = parse_retry_after(resp.headers.get("retry-after"))
        if wait is None:
            wait = backoff.record_failure()
        return CycleResult(OutcomeKind.THROTTLED, wait, status)

    return CycleResult(OutcomeKind.TRANSIENT, backoff.record_failure(), status)


class MessageSink(Protocol):
    def dispatch(self, messages: list[IncomingMessage]) -> Any: ...


class HeartbeatEngine:
    """
    Owns BackoffState and the drain side of PendingReplies.
    start() runs the loop as an asyncio task; stop() cancels the pending wait.
    """

    def __init__(
        self,
        collector: MetricsCollector,
        transport: ReportTransport,
        dispatcher: MessageSink,
        replies: PendingReplies,
        daemon_version: str,
        default_interval_ms: int,
        rng: random.Random | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ) -> None:
        self._collector = collector
        self._transport = transport
        self._dispatcher = dispatcher
        self._replies = replies
        self._version = daemon_version
        self._default_interval_ms = default_interval_ms
        self._rng = rng or random.Random()
        self._sleep = sleep
        self._started_at = time.monotonic()
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self.backoff = BackoffState()
        self.state = EngineState.STOPPED

    # ── Lifecycle ─────────────────────────────────────────────────────────
    def start(self) -> asyncio.Task:
        self.state = EngineState.RUNNING
        self._stop_event.clear()
        self._task = asyncio.create_task(self.run(), name="heartbeat")
        return self._task

    def stop(self) -> None:
        """Stop after the in-flight cycle (if any); no new cycle is scheduled."""
        self.state = EngineState.STOPPED
        self._stop_event.set()

    async def wait_stopped(self) -> None:
        if self._task is not None:
            await self._task

    def uptime_seconds(self) -> int:
        return round(time.monotonic() - self._started_at)

    # ── Loop ──────────────────────────────────────────────────────────────
    async def run(self) -> None:
        if not self._stop_event.is_set():
            self.state = EngineState.RUNNING
        while self.state is EngineState.RUNNING:
            try:
                result = await self.run_cycle()
            except Exception as exc:
                wait = self.backoff.record_failure()
                log.exception("Heartbeat cycle crashed: %s (retrying in %ds)", exc, wait // 1000)
                result = CycleResult(OutcomeKind.TRANSIENT, wait)

            if self.state is not EngineState.RUNNING:
                break

            delay_ms = jittered_delay(result.wait_ms, self._rng)
            log.debug("Next heartbeat in %.1fs (%s)", delay_ms / 1000, result.kind.value)
            await self._wait(delay_ms)

        log.info("Heartbeat loop stopped")

    async def _wait(self, delay_ms: int) -> None:
        """Sleep for delay_ms, returning early once stop() is called."""
        sleeper = self._sleep or asyncio.sleep
        nap = asyncio.ensure_future(sleeper(delay_ms / 1000))
        stopped = asyncio.ensure_future(self._stop_event.wait())
        try:
            await asyncio.wait({nap, stopped}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            nap.cancel()
            stopped.cancel()

    async def run_cycle(self) -> CycleResult:
        payload = await self._collector.collect(self._version, self.uptime_seconds())
        replies = self._replies.drain()
        accepted = False
        try:
            try:
                resp = await self._transport.send(payload.to_wire(replies))
            except httpx.HTTPError as exc:
                wait = self.backoff.record_failure()
                log.warning(
                    "Heartbeat failed: %s - retrying in %ds (attempt %d)",
                    str(exc) or type(exc).__name__, wait // 1000,
                    self.backoff.consecutive_failures,
                )
                return CycleResult(OutcomeKind.TRANSIENT, wait)

            result = classify_response(resp, self.backoff, self._default_interval_ms)

            if result.kind is OutcomeKind.SUCCESS:
                accepted = True
                disk = "N/A" if payload.disk_usage == DISK_UNKNOWN else f"{payload.disk_usage}%"
                log.info(
                    "Heartbeat sent (CPU: %d%%, RAM: %d%%, Disk: %s, replies: %d)",
                    payload.cpu_usage, payload.ram_usage, disk, len(replies),
                )
                self._deliver(result.outcome.commands if result.outcome else [])
                return result

            if result.kind is OutcomeKind.FATAL:
                self.state = EngineState.STOPPED
                log.error("Authentication failed (%d). Check your API key.", resp.status_code)
                log.error("Heartbeats stopped: fix your API key and restart the daemon.")
            elif result.kind is OutcomeKind.THROTTLED:
                log.warning("Rate limited (429). Retrying in %ds", round(result.wait_ms / 1000))
            elif resp.status_code >= 500:
                log.warning(
                    "Server error (%d). Retrying in %ds", resp.status_code, result.wait_ms // 1000,
                )
            else:
                log.warning(
                    "Unexpected response: %d %s - retrying in %ds",
                    resp.status_code, resp.body[:200], result.wait_ms // 1000,
                )
            return result
        finally:
            if not accepted:
                self._requeue(replies)

    def _requeue(self, replies: list[MessageReply]) -> None:
        if replies:
            self._replies.requeue(replies)
            log.info("Re-queued %d message replies for the next heartbeat", len(replies))

    def _deliver(self, commands: list[Any]) -> None:
        messages: list[IncomingMessage] = []
        for cmd in commands:
            msg = IncomingMessage.from_command(cmd)
            if msg is None:
                kind = cmd.get("type", "?") if isinstance(cmd, dict) else type(cmd).__name__
                log.warning("Ignoring unsupported command (type=%s)", kind)
                continue
            messages.append(msg)
        if messages:
            log.info("Received %d message(s) for local agents", len(messages))
            self._dispatcher.dispatch(messages)
