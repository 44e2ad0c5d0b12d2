"""
Pending-replies queue: filled by message tasks, drained by the heartbeat engine.
"""
from __future__ import annotations

import threading
from typing import Iterable

from sparebox_daemon.core.messages import MessageReply


class PendingReplies:
    """Append-only buffer between drains. Only the heartbeat engine drains."""

    def __init__(self) -> None:
        self._items: list[MessageReply] = []
        self._lock = threading.Lock()

    def put(self, reply: MessageReply) -> None:
        with self._lock:
            self._items.append(reply)

    def requeue(self, replies: Iterable[MessageReply]) -> None:
        """Put back replies whose report never reached the control plane."""
        with self._lock:
            self._items.extend(replies)

    def drain(self) -> list[MessageReply]:
        with self._lock:
            items, self._items = self._items, []
        return items

    def snapshot(self) -> list[MessageReply]:
        with self._lock:
            return list(self._items)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)
