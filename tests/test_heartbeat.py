"""Tests for sparebox_daemon.core.heartbeat: backoff, classification, engine loop."""
import asyncio
import json
import random
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))


def _payload():
    from sparebox_daemon.core.metrics import ReportPayload
    return ReportPayload(
        cpu_usage=12, ram_usage=40, disk_usage=-1, os_info="Linux 6.1",
        total_ram_gb=16.0, cpu_cores=8, cpu_model="Test CPU",
        uptime=5, daemon_version="0.4.0",
    )


class FakeCollector:
    def __init__(self):
        self.calls = 0

    async def collect(self, daemon_version, uptime):
        self.calls += 1
        return _payload()


def _response(status, body=None, headers=None):
    from sparebox_daemon.core.transport import TransportResponse
    text = body if isinstance(body, str) else json.dumps(body or {})
    return TransportResponse(status_code=status, headers=httpx.Headers(headers or {}), body=text)


def _engine(handler, dispatcher=None, replies=None, sleep=None, rng=None):
    from sparebox_daemon.core.heartbeat import HeartbeatEngine
    from sparebox_daemon.core.replies import PendingReplies
    from sparebox_daemon.core.transport import ReportTransport

    transport = ReportTransport(
        "https://cp.example", "sbx_host_test", transport=httpx.MockTransport(handler),
    )
    return HeartbeatEngine(
        collector=FakeCollector(),
        transport=transport,
        dispatcher=dispatcher or MagicMock(),
        replies=replies if replies is not None else PendingReplies(),
        daemon_version="0.4.0",
        default_interval_ms=60_000,
        rng=rng or random.Random(7),
        sleep=sleep,
    )


def _reply(n):
    from sparebox_daemon.core.messages import MessageReply
    return MessageReply(message_id=f"m{n}", agent_id="agent-1", content=f"reply {n}")


# ── BackoffState ─────────────────────────────────────────────────────────────

class TestBackoffState:
    def test_exponential_sequence(self):
        from sparebox_daemon.core.heartbeat import BackoffState
        b = BackoffState()
        for n in range(1, 15):
            assert b.record_failure() == min(1000 * 2 ** (n - 1), 300_000)
        assert b.consecutive_failures == 14

    def test_capped_at_five_minutes(self):
        from sparebox_daemon.core.heartbeat import BackoffState
        b = BackoffState()
        delays = [b.record_failure() for _ in range(20)]
        assert max(delays) == 300_000
        assert b.current_state() == (300_000, 20)

    def test_success_resets(self):
        from sparebox_daemon.core.heartbeat import BackoffState
        b = BackoffState()
        for _ in range(5):
            b.record_failure()
        b.record_success()
        assert b.current_state() == (1000, 0)
        assert b.record_failure() == 1000


# ── classify_response ────────────────────────────────────────────────────────

class TestClassifyResponse:
    def test_success_uses_server_interval_with_floor(self):
        from sparebox_daemon.core.heartbeat import BackoffState, OutcomeKind, classify_response
        b = BackoffState()
        b.record_failure()
        r = classify_response(_response(200, {"ok": True, "ts": 1, "commands": [],
                                              "nextHeartbeatMs": 10_000}), b, 60_000)
        assert r.kind is OutcomeKind.SUCCESS
        assert r.wait_ms == 30_000
        assert b.current_state() == (1000, 0)

    def test_success_large_server_interval_not_clamped(self):
        from sparebox_daemon.core.heartbeat import BackoffState, classify_response
        r = classify_response(_response(200, {"nextHeartbeatMs": 900_000}), BackoffState(), 60_000)
        assert r.wait_ms == 900_000

    def test_success_zero_interval_uses_default(self):
        from sparebox_daemon.core.heartbeat import BackoffState, classify_response
        r = classify_response(_response(201, {"ok": True, "nextHeartbeatMs": 0}), BackoffState(), 45_000)
        assert r.wait_ms == 45_000

    def test_success_with_invalid_json(self):
        from sparebox_daemon.core.heartbeat import BackoffState, OutcomeKind, classify_response
        r = classify_response(_response(200, "<html>"), BackoffState(), 60_000)
        assert r.kind is OutcomeKind.SUCCESS
        assert r.outcome.commands == []
        assert r.wait_ms == 60_000

    @pytest.mark.parametrize("status", [401, 403])
    def test_auth_failure_is_fatal(self, status):
        from sparebox_daemon.core.heartbeat import BackoffState, OutcomeKind, classify_response
        r = classify_response(_response(status), BackoffState(), 60_000)
        assert r.kind is OutcomeKind.FATAL

    def test_429_retry_after_ignores_backoff(self):
        from sparebox_daemon.core.heartbeat import BackoffState, OutcomeKind, classify_response
        b = BackoffState()
        for _ in range(4):
            b.record_failure()
        before = b.current_state()
        r = classify_response(_response(429, headers={"Retry-After": "5"}), b, 60_000)
        assert r.kind is OutcomeKind.THROTTLED
        assert r.wait_ms == 5000
        assert b.current_state() == before

    def test_429_without_header_advances_backoff(self):
        from sparebox_daemon.core.heartbeat import BackoffState, classify_response
        b = BackoffState()
        b.record_failure()
        r = classify_response(_response(429), b, 60_000)
        assert r.wait_ms == 2000
        assert b.current_state() == (4000, 2)

    @pytest.mark.parametrize("status", [500, 502, 503, 400, 404, 302])
    def test_other_statuses_are_transient(self, status):
        from sparebox_daemon.core.heartbeat import BackoffState, OutcomeKind, classify_response
        b = BackoffState()
        r = classify_response(_response(status), b, 60_000)
        assert r.kind is OutcomeKind.TRANSIENT
        assert r.wait_ms == 1000
        assert b.consecutive_failures == 1

    @pytest.mark.parametrize("raw", ["1e999", "Infinity", "-Infinity", "NaN"])
    def test_success_non_finite_interval_uses_default(self, raw):
        from sparebox_daemon.core.heartbeat import BackoffState, OutcomeKind, classify_response
        b = BackoffState()
        body = '{"ok": true, "commands": [], "nextHeartbeatMs": %s}' % raw
        r = classify_response(_response(200, body), b, 60_000)
        assert r.kind is OutcomeKind.SUCCESS
        assert r.wait_ms == 60_000

    def test_429_non_finite_retry_after_uses_backoff(self):
        from sparebox_daemon.core.heartbeat import BackoffState, OutcomeKind, classify_response
        b = BackoffState()
        r = classify_response(_response(429, headers={"Retry-After": "nan"}), b, 60_000)
        assert r.kind is OutcomeKind.THROTTLED
        assert r.wait_ms == 1000
        assert b.consecutive_failures == 1


class TestScheduling:
    def test_retry_after_parsing(self):
        from sparebox_daemon.core.heartbeat import parse_retry_after
        assert parse_retry_after("5") == 5000
        assert parse_retry_after(" 1 ") == 1000
        assert parse_retry_after(None) is None
        assert parse_retry_after("Wed, 21 Oct 2026 07:28:00 GMT") is None

    @pytest.mark.parametrize("raw", ["nan", "inf", "-inf", "1e999", "1e308", "-3"])
    def test_retry_after_rejects_unusable_numbers(self, raw):
        from sparebox_daemon.core.heartbeat import parse_retry_after
        assert parse_retry_after(raw) is None

    @pytest.mark.parametrize("interval", [1000, 5000, 9000, 30_000, 300_000])
    def test_jitter_bounds(self, interval):
        from sparebox_daemon.core.heartbeat import jittered_delay
        rng = random.Random(interval)
        for _ in range(500):
            d = jittered_delay(interval, rng)
            assert max(interval - 5000, 5000) <= d <= interval + 5000


# ── HeartbeatEngine ──────────────────────────────────────────────────────────

class TestHeartbeatEngine:
    @pytest.mark.asyncio
    async def test_request_shape(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"ok": True, "ts": 1, "commands": [], "nextHeartbeatMs": 60_000})

        engine = _engine(handler)
        await engine.run_cycle()

        req = seen[0]
        assert req.method == "POST"
        assert str(req.url) == "https://cp.example/api/hosts/heartbeat"
        assert req.headers["authorization"] == "Bearer sbx_host_test"
        assert req.headers["content-type"] == "application/json"
        body = json.loads(req.content)
        assert body["cpuUsage"] == 12
        assert body["diskUsage"] == -1
        assert body["agentStatuses"] == []
        assert body["messageResponses"] == []

    @pytest.mark.asyncio
    async def test_auth_failure_stops_loop(self):
        from sparebox_daemon.core.heartbeat import EngineState
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(401, json={"ok": False})

        sleep = AsyncMock()
        engine = _engine(handler, sleep=sleep)
        await asyncio.wait_for(engine.run(), timeout=5)

        assert engine.state is EngineState.STOPPED
        assert len(calls) == 1
        sleep.assert_not_called()

    @pytest.mark.asyncio
    async def test_failures_back_off_until_auth_failure(self):
        statuses = iter([503, 503, 503, 403])
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(next(statuses))

        sleep = AsyncMock()
        engine = _engine(handler, sleep=sleep)
        await asyncio.wait_for(engine.run(), timeout=5)

        assert len(calls) == 4
        delays_ms = [c.args[0] * 1000 for c in sleep.call_args_list]
        assert len(delays_ms) == 3
        for chosen, d in zip([1000, 2000, 4000], delays_ms):
            assert max(chosen - 5000, 5000) <= d <= chosen + 5000

    @pytest.mark.asyncio
    async def test_replies_requeued_on_server_error(self):
        from sparebox_daemon.core.replies import PendingReplies
        replies = PendingReplies()
        queued = [_reply(1), _reply(2)]
        for r in queued:
            replies.put(r)

        engine = _engine(lambda request: httpx.Response(500), replies=replies)
        await engine.run_cycle()

        assert replies.snapshot() == queued

    @pytest.mark.asyncio
    async def test_replies_requeued_on_network_error(self):
        from sparebox_daemon.core.heartbeat import OutcomeKind
        from sparebox_daemon.core.replies import PendingReplies
        replies = PendingReplies()
        replies.put(_reply(1))

        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        engine = _engine(handler, replies=replies)
        result = await engine.run_cycle()

        assert result.kind is OutcomeKind.TRANSIENT
        assert result.wait_ms == 1000
        assert replies.snapshot() == [_reply(1)]

    @pytest.mark.asyncio
    async def test_retried_replies_sent_once_on_success(self):
        from sparebox_daemon.core.replies import PendingReplies
        replies = PendingReplies()
        replies.put(_reply(1))
        bodies = []
        statuses = iter([429, 200])

        def handler(request):
            bodies.append(json.loads(request.content))
            return httpx.Response(next(statuses), json={"ok": True, "commands": []})

        engine = _engine(handler, replies=replies)
        await engine.run_cycle()
        replies.put(_reply(2))
        await engine.run_cycle()

        assert [r["messageId"] for r in bodies[0]["messageResponses"]] == ["m1"]
        assert sorted(r["messageId"] for r in bodies[1]["messageResponses"]) == ["m1", "m2"]
        assert len(replies) == 0

    @pytest.mark.asyncio
    async def test_success_dispatches_messages(self):
        from sparebox_daemon.core.messages import IncomingMessage
        commands = [
            {"id": "m1", "agentId": "a1", "content": "hello"},
            {"type": "deploy", "agentId": "a2"},
            "garbage",
            {"type": "message", "id": "m2", "agentId": "a1", "content": "again"},
        ]

        def handler(request):
            return httpx.Response(200, json={"ok": True, "ts": 1, "commands": commands,
                                             "nextHeartbeatMs": 60_000})

        dispatcher = MagicMock()
        engine = _engine(handler, dispatcher=dispatcher)
        await engine.run_cycle()

        dispatcher.dispatch.assert_called_once()
        delivered = dispatcher.dispatch.call_args.args[0]
        assert delivered == [
            IncomingMessage(id="m1", agent_id="a1", content="hello"),
            IncomingMessage(id="m2", agent_id="a1", content="again"),
        ]

    @pytest.mark.asyncio
    async def test_no_dispatch_without_messages(self):
        dispatcher = MagicMock()
        engine = _engine(lambda request: httpx.Response(200, json={"ok": True, "commands": []}),
                         dispatcher=dispatcher)
        await engine.run_cycle()
        dispatcher.dispatch.assert_not_called()

    @pytest.mark.asyncio
    async def test_stop_cancels_pending_wait(self):
        from sparebox_daemon.core.heartbeat import EngineState
        first_sent = asyncio.Event()
        calls = []

        def handler(request):
            calls.append(request)
            first_sent.set()
            return httpx.Response(200, json={"ok": True, "commands": [], "nextHeartbeatMs": 60_000})

        engine = _engine(handler)
        engine.start()
        await asyncio.wait_for(first_sent.wait(), timeout=5)
        await asyncio.sleep(0.05)
        engine.stop()
        await asyncio.wait_for(engine.wait_stopped(), timeout=2)

        assert engine.state is EngineState.STOPPED
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_crashed_cycle_counts_as_transient(self):
        from sparebox_daemon.core.heartbeat import EngineState
        statuses = iter([401])

        def handler(request):
            return httpx.Response(next(statuses))

        engine = _engine(handler, sleep=AsyncMock())
        engine._collector.collect = AsyncMock(side_effect=[RuntimeError("boom"), _payload()])
        await asyncio.wait_for(engine.run(), timeout=5)

        assert engine.state is EngineState.STOPPED
        assert engine.backoff.consecutive_failures == 1

    @pytest.mark.asyncio
    async def test_replies_requeued_when_retry_after_is_nan(self):
        from sparebox_daemon.core.heartbeat import OutcomeKind
        from sparebox_daemon.core.replies import PendingReplies
        replies = PendingReplies()
        replies.put(_reply(1))

        engine = _engine(lambda request: httpx.Response(429, headers={"Retry-After": "nan"}),
                         replies=replies)
        result = await engine.run_cycle()

        assert result.kind is OutcomeKind.THROTTLED
        assert replies.snapshot() == [_reply(1)]

    @pytest.mark.asyncio
    async def test_infinite_interval_still_dispatches_messages(self):
        from sparebox_daemon.core.heartbeat import OutcomeKind
        from sparebox_daemon.core.messages import IncomingMessage
        body = (b'{"ok": true, "nextHeartbeatMs": 1e999, '
                b'"commands": [{"id": "m1", "agentId": "a1", "content": "hello"}]}')

        dispatcher = MagicMock()
        engine = _engine(lambda request: httpx.Response(200, content=body), dispatcher=dispatcher)
        result = await engine.run_cycle()

        assert result.kind is OutcomeKind.SUCCESS
        assert result.wait_ms == 60_000
        assert engine.backoff.consecutive_failures == 0
        dispatcher.dispatch.assert_called_once_with(
            [IncomingMessage(id="m1", agent_id="a1", content="hello")]
        )

    @pytest.mark.asyncio
    async def test_replies_requeued_when_cycle_is_cancelled(self):
        from sparebox_daemon.core.replies import PendingReplies
        replies = PendingReplies()
        replies.put(_reply(1))
        sent = asyncio.Event()

        engine = _engine(lambda request: httpx.Response(200), replies=replies)

        async def hang(body):
            sent.set()
            await asyncio.Event().wait()

        engine._transport.send = hang
        task = asyncio.create_task(engine.run_cycle())
        await asyncio.wait_for(sent.wait(), timeout=2)
        assert len(replies) == 0
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert replies.snapshot() == [_reply(1)]

    @pytest.mark.asyncio
    async def test_stop_interrupts_injected_sleep(self):
        from sparebox_daemon.core.heartbeat import EngineState
        first_sent = asyncio.Event()
        never = asyncio.Event()
        calls = []

        def handler(request):
            calls.append(request)
            first_sent.set()
            return httpx.Response(200, json={"ok": True, "commands": []})

        async def sleep(seconds):
            await never.wait()

        engine = _engine(handler, sleep=sleep)
        engine.start()
        await asyncio.wait_for(first_sent.wait(), timeout=5)
        await asyncio.sleep(0.05)
        engine.stop()
        await asyncio.wait_for(engine.wait_stopped(), timeout=2)

        assert engine.state is EngineState.STOPPED
        assert len(calls) == 1
