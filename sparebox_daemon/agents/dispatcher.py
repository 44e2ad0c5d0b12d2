"""
MessageDispatcher: relay chat messages to locally hosted agents.

Each message runs as its own asyncio task and always ends in exactly one
queued MessageReply: the agent's answer, or a [System] reply describing
why it could not be delivered.

  container      <rt> exec <container> openclaw agent --session-id ... --json
  local-profile  openclaw --profile <name> agent --session-id ... --json
"""
from __future__ import annotations

import asyncio
import hashlib
from typing import Iterable

from sparebox_daemon.agents.registry import AgentRegistry
from sparebox_daemon.agents.response import parse_agent_response
from sparebox_daemon.agents.runtime import AgentRuntimeError, Runner, RuntimeLocator
from sparebox_daemon.core.messages import (
    AgentDescriptor,
    IncomingMessage,
    IsolationKind,
    MessageReply,
)
from sparebox_daemon.core.replies import PendingReplies
from sparebox_daemon.utils.logger import get_logger
from sparebox_daemon.utils.process import OUTPUT_LIMIT, run_subprocess

log = get_logger("agents.dispatcher")

SUBPROCESS_TIMEOUT = 120  # seconds
AGENT_RESPONSE_TIMEOUT = 90  # seconds, passed to the CLI
SESSION_PREFIX = "sparebox-chat-"
PROFILE_PREFIX = "sparebox-agent-"

NOT_FOUND = "Agent not found on this host."
UNSUPPORTED = "Agent isolation mode does not support messaging."


def session_id_for(agent_id: str) -> str:
    """Stable per agent, so multi-turn context survives across messages."""
    digest = hashlib.sha256(agent_id.encode("utf-8")).hexdigest()[:12]
    return f"{SESSION_PREFIX}{digest}"


def profile_name_for(agent: AgentDescriptor) -> str:
    return agent.profile or f"{PROFILE_PREFIX}{agent.agent_id[:8]}"


def _agent_args(msg: IncomingMessage) -> list[str]:
    return [
        "agent",
        "--session-id", session_id_for(msg.agent_id),
        "--message", msg.content,
        "--json",
        "--timeout", str(AGENT_RESPONSE_TIMEOUT),
    ]


class MessageDispatcher:
    def __init__(
        self,
        registry: AgentRegistry,
        replies: PendingReplies,
        locator: RuntimeLocator | None = None,
        runner: Runner = run_subprocess,
        timeout: float = SUBPROCESS_TIMEOUT,
    ) -> None:
        self._registry = registry
        self._replies = replies
        self._runner = runner
        self._locator = locator or RuntimeLocator(runner=runner)
        self._timeout = timeout
        self._tasks: set[asyncio.Task] = set()

    # ── Public API ────────────────────────────────────────────────────────
    def dispatch(self, messages: Iterable[IncomingMessage]) -> list[asyncio.Task]:
        """Start one task per message and return immediately."""
        started = []
        for msg in messages:
            task = asyncio.create_task(self._process(msg), name=f"message-{msg.id}")
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            started.append(task)
        return started

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def wait_idle(self, timeout: float | None = None) -> bool:
        """Wait for in-flight messages. Returns False if some are still running."""
        if not self._tasks:
            return True
        _, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        return not pending

    async def handle(self, msg: IncomingMessage) -> MessageReply:
        """Deliver one message; failures become a [System] reply, never an exception."""
        try:
            return await self._deliver(msg)
        except Exception as exc:
            log.error("Message %s for agent %s failed: %s", msg.id, msg.agent_id, exc)
            return MessageReply.system(msg, f"Failed to deliver message to agent: {exc}")

    # ── Internals ─────────────────────────────────────────────────────────
    async def _process(self, msg: IncomingMessage) -> MessageReply:
        reply = await self.handle(msg)
        self._replies.put(reply)
        return reply

    async def _deliver(self, msg: IncomingMessage) -> MessageReply:
        agent = self._registry.get(msg.agent_id)
        if agent is None:
            log.warning("Message for unknown agent %s - skipping", msg.agent_id)
            return MessageReply.system(msg, NOT_FOUND)

        if agent.isolation == IsolationKind.CONTAINER.value and agent.container_id:
            runtime = await self._locator.require_container_runtime()
            log.info("Sending message to container agent %s (%s)",
                     msg.agent_id, agent.container_id[:12])
            cmd = [runtime, "exec", agent.container_id, "openclaw", *_agent_args(msg)]
        elif agent.isolation == IsolationKind.LOCAL_PROFILE.value:
            binary = await self._locator.require_agent_binary()
            profile = profile_name_for(agent)
            log.info("Sending message to profile agent %s (%s) on port %d",
                     msg.agent_id, profile, agent.port)
            cmd = [*binary, "--profile", profile, *_agent_args(msg)]
        else:
            log.warning("Agent %s has unsupported isolation: %s", msg.agent_id, agent.isolation)
            return MessageReply.system(msg, UNSUPPORTED)

        stdout = await self._run(cmd)
        text = parse_agent_response(stdout)
        log.info("Agent %s responded (%d chars)", msg.agent_id, len(text))
        return MessageReply.for_message(msg, text)

    async def _run(self, cmd: list[str]) -> str:
        result = await self._runner(cmd, timeout=self._timeout, output_limit=OUTPUT_LIMIT)
        stderr = result.get("stderr", "").strip()
        if result.get("timed_out"):
            raise AgentRuntimeError(f"{cmd[0]} timed out after {self._timeout}s")
        if result.get("overflowed"):
            raise AgentRuntimeError(f"{cmd[0]} output exceeded {OUTPUT_LIMIT} bytes")
        if result["returncode"] != 0:
            raise AgentRuntimeError(
                f"{cmd[0]} exited with code {result['returncode']}: {stderr[:500]}"
            )
        if stderr:
            log.debug("%s stderr: %s", cmd[0], stderr[:2000])
        return result.get("stdout", "")
