"""
Locate the agent runtimes on this host: a container runtime (docker/podman)
and the openclaw CLI for profile agents. Probed once, cached for the process.
"""
from __future__ import annotations

import asyncio
import shlex
from pathlib import Path
from typing import Awaitable, Callable

from sparebox_daemon.utils.logger import get_logger
from sparebox_daemon.utils.process import run_subprocess

log = get_logger("agents.runtime")

PROBE_TIMEOUT = 10  # seconds
CONTAINER_RUNTIMES = ("docker", "podman")
AGENT_CLI = "openclaw"
AGENT_CLI_PATHS = (
    Path.home() / ".local" / "bin" / AGENT_CLI,
    Path("/usr/local/bin") / AGENT_CLI,
    Path("/usr/bin") / AGENT_CLI,
)

Runner = Callable[..., Awaitable[dict]]


class AgentRuntimeError(Exception):
    pass


class RuntimeLocator:
    """Explicit config values win; otherwise the first working candidate."""

    def __init__(
        self,
        container_runtime: str = "",
        agent_binary: str = "",
        runner: Runner = run_subprocess,
    ) -> None:
        self._runner = runner
        self._container_runtime: str | None = container_runtime or None
        self._agent_binary: list[str] | None = shlex.split(agent_binary) if agent_binary else None
        self._lock = asyncio.Lock()

    async def container_runtime(self) -> str | None:
        async with self._lock:
            if self._container_runtime is None:
                for rt in CONTAINER_RUNTIMES:
                    if await self._works([rt, "info", "--format", "{{.ServerVersion}}"]):
                        log.info("Container runtime detected: %s", rt)
                        self._container_runtime = rt
                        break
                else:
                    log.warning("No container runtime (docker/podman) detected")
                    return None
            return self._container_runtime

    async def agent_binary(self) -> list[str] | None:
        async with self._lock:
            if self._agent_binary is None:
                candidates = [[AGENT_CLI]] + [[str(p)] for p in AGENT_CLI_PATHS]
                for cmd in candidates:
                    if await self._works(cmd + ["--version"]):
                        log.info("Agent CLI found: %s", " ".join(cmd))
                        self._agent_binary = cmd
                        break
                else:
                    log.warning("%s binary not found", AGENT_CLI)
                    return None
            return list(self._agent_binary)

    async def require_container_runtime(self) -> str:
        rt = await self.container_runtime()
        if not rt:
            raise AgentRuntimeError("No container runtime available")
        return rt

    async def require_agent_binary(self) -> list[str]:
        cmd = await self.agent_binary()
        if not cmd:
            raise AgentRuntimeError(f"{AGENT_CLI} binary not found")
        return cmd

    async def _works(self, cmd: list[str]) -> bool:
        result = await self._runner(cmd, timeout=PROBE_TIMEOUT)
        return result["returncode"] == 0
