"""
AgentRegistry: agent id → AgentDescriptor for agents hosted on this machine.
Populated by the daemon at startup; the message dispatcher only reads it.
"""
from __future__ import annotations

from typing import Any, Iterable

from sparebox_daemon.core.messages import AgentDescriptor


class AgentRegistry:
    def __init__(self, descriptors: Iterable[AgentDescriptor] = ()) -> None:
        self._agents: dict[str, AgentDescriptor] = {}
        for d in descriptors:
            self.register(d)

    def register(self, descriptor: AgentDescriptor) -> None:
        self._agents[descriptor.agent_id] = descriptor

    def unregister(self, agent_id: str) -> None:
        self._agents.pop(agent_id, None)

    def get(self, agent_id: str) -> AgentDescriptor | None:
        return self._agents.get(agent_id)

    def all_ids(self) -> list[str]:
        return list(self._agents.keys())

    def __len__(self) -> int:
        return len(self._agents)

    @classmethod
    def from_config(cls, entries: list[dict[str, Any]]) -> "AgentRegistry":
        return cls(AgentDescriptor.from_dict(e) for e in entries)
