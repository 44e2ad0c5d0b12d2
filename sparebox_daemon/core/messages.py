"""
Chat relay message types: IncomingMessage, MessageReply, AgentDescriptor.
Wire keys are camelCase (control plane JSON); attributes are snake_case.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

SYSTEM_PREFIX = "[System]"


class IsolationKind(str, Enum):
    CONTAINER = "container"
    LOCAL_PROFILE = "local-profile"
    NONE = "none"


# Names used by the agent manager / control plane for the same modes
_ISOLATION_ALIASES = {
    "docker": IsolationKind.CONTAINER,
    "podman": IsolationKind.CONTAINER,
    "container": IsolationKind.CONTAINER,
    "profile": IsolationKind.LOCAL_PROFILE,
    "local-profile": IsolationKind.LOCAL_PROFILE,
    "none": IsolationKind.NONE,
}


def normalize_isolation(value: str) -> str:
    """Map known aliases onto IsolationKind values; unknown values pass through."""
    kind = _ISOLATION_ALIASES.get(str(value).strip().lower())
    return kind.value if kind else str(value)


@dataclass(frozen=True)
class IncomingMessage:
    id: str
    agent_id: str
    content: str

    @classmethod
    def from_command(cls, command: Any) -> "IncomingMessage | None":
        """Build from one heartbeat `commands` entry; None if it is not a chat message."""
        if not isinstance(command, dict):
            return None
        if command.get("type", "message") not in ("message", "chat_message"):
            return None
        body = command.get("payload") if isinstance(command.get("payload"), dict) else command
        msg_id = body.get("id") or command.get("id")
        agent_id = body.get("agentId")
        content = body.get("content")
        if not msg_id or not agent_id or not isinstance(content, str):
            return None
        return cls(id=str(msg_id), agent_id=str(agent_id), content=content)


@dataclass(frozen=True)
class MessageReply:
    message_id: str
    agent_id: str
    content: str

    @classmethod
    def for_message(cls, msg: IncomingMessage, content: str) -> "MessageReply":
        return cls(message_id=msg.id, agent_id=msg.agent_id, content=content)

    @classmethod
    def system(cls, msg: IncomingMessage, text: str) -> "MessageReply":
        return cls.for_message(msg, f"{SYSTEM_PREFIX} {text}")

    def to_wire(self) -> dict[str, str]:
        return {"messageId": self.message_id, "agentId": self.agent_id, "content": self.content}


@dataclass(frozen=True)
class AgentDescriptor:
    agent_id: str
    isolation: str
    container_id: str | None = None
    profile: str | None = None
    port: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AgentDescriptor":
        return cls(
            agent_id=str(data.get("id") or data.get("agentId")),
            isolation=normalize_isolation(data.get("isolation", IsolationKind.NONE.value)),
            container_id=data.get("container_id") or data.get("containerId") or None,
            profile=data.get("profile") or None,
            port=int(data.get("port") or 0),
        )
