from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional, Set

logger = logging.getLogger(__name__)

SEVERITIES = ("system", "info", "warning", "error", "success")
DEFAULT_CAPACITY = 2000


@dataclass(frozen=True)
class BuildLogEntry:
    message: str
    severity: str = "info"
    timestamp: int = field(default_factory=lambda: int(time.time() * 1000))

    def to_dict(self) -> Dict[str, Any]:
        return {"message": self.message, "type": self.severity, "timestamp": self.timestamp}


class Subscription:
    """Live tail of a BuildLog. Iterate to receive entries; close() to unregister."""

    def __init__(self, log: "BuildLog") -> None:
        self._log = log
        self._queue: "asyncio.Queue[Optional[BuildLogEntry]]" = asyncio.Queue()
        self.closed = False

    def _push(self, entry: Optional[BuildLogEntry]) -> None:
        if not self.closed:
            self._queue.put_nowait(entry)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._log._unsubscribe(self)
        self._queue.put_nowait(None)

    async def get(self, timeout: Optional[float] = None) -> Optional[BuildLogEntry]:
        """Next entry, or None once the subscription has been released."""
        if timeout is None:
            return await self._queue.get()
        return await asyncio.wait_for(self._queue.get(), timeout=timeout)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> BuildLogEntry:
        entry = await self._queue.get()
        if entry is None:
            raise StopAsyncIteration
        return entry


class BuildLog:
    def __init__(self, bot_id: str, capacity: int = DEFAULT_CAPACITY) -> None:
        self.bot_id = bot_id
        self._entries: Deque[BuildLogEntry] = deque(maxlen=capacity)
        self._subscribers: Set[Subscription] = set()

    @property
    def capacity(self) -> int:
        return self._entries.maxlen or DEFAULT_CAPACITY

    def __len__(self) -> int:
        return len(self._entries)

    def append(self, message: str, severity: str = "info") -> BuildLogEntry:
        if severity not in SEVERITIES:
            severity = "info"
        entry = BuildLogEntry(message=message, severity=severity)
        self._entries.append(entry)
        for sub in list(self._subscribers):
            sub._push(entry)
        return entry

    def snapshot(self) -> List[BuildLogEntry]:
        return list(self._entries)

    def clear(self) -> None:
        self._entries.clear()

    def subscribe(self) -> Subscription:
        sub = Subscription(self)
        self._subscribers.add(sub)
        return sub

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def _unsubscribe(self, sub: Subscription) -> None:
        self._subscribers.discard(sub)

    def destroy(self) -> None:
        for sub in list(self._subscribers):
            sub.close()
        self._subscribers.clear()
        self._entries.clear()


class BuildLogRegistry:
    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        self._capacity = capacity
        self._logs: Dict[str, BuildLog] = {}

    def get(self, bot_id: str) -> BuildLog:
        log = self._logs.get(bot_id)
        if log is None:
            log = BuildLog(bot_id, capacity=self._capacity)
            self._logs[bot_id] = log
        return log

    def get_if_exists(self, bot_id: str) -> Optional[BuildLog]:
        return self._logs.get(bot_id)

    def remove(self, bot_id: str) -> None:
        log = self._logs.pop(bot_id, None)
        if log is not None:
            log.destroy()
            logger.debug("Released build log for bot %s", bot_id)

    def reset(self) -> None:
        for bot_id in list(self._logs):
            self.remove(bot_id)
