from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from .models import OperationResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Event:
    type: str
    data: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "data": self.data}


class EventSubscription:
    def __init__(self, bus: "EventBus") -> None:
        self._bus = bus
        self._queue: "asyncio.Queue[Optional[Event]]" = asyncio.Queue()
        self.closed = False

    def _push(self, event: Event) -> None:
        if not self.closed:
            self._queue.put_nowait(event)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._bus._unsubscribe(self)
        self._queue.put_nowait(None)

    async def get(self, timeout: Optional[float] = None) -> Optional[Event]:
        if timeout is None:
            return await self._queue.get()
        return await asyncio.wait_for(self._queue.get(), timeout=timeout)

    def __aiter__(self) -> "EventSubscription":
        return self

    async def __anext__(self) -> Event:
        event = await self._queue.get()
        if event is None:
            raise StopAsyncIteration
        return event


class EventBus:
    """In-process broadcast of bot lifecycle events."""

    def __init__(self) -> None:
        self._subscribers: Set[EventSubscription] = set()

    def subscribe(self) -> EventSubscription:
        sub = EventSubscription(self)
        self._subscribers.add(sub)
        return sub

    def _unsubscribe(self, sub: EventSubscription) -> None:
        self._subscribers.discard(sub)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, event_type: str, data: Any = None) -> Event:
        event = Event(type=event_type, data=data)
        for sub in list(self._subscribers):
            sub._push(event)
        logger.debug("Published %s to %d subscriber(s)", event_type, len(self._subscribers))
        return event

    def close(self) -> None:
        for sub in list(self._subscribers):
            sub.close()


@dataclass(frozen=True)
class Job:
    name: str
    bot_id: str
    done_event: str
    failed_event: str
    payload: Optional[Callable[[], Any]] = field(default=None, compare=False)


class TaskQueue:
    """Runs operations in the background and reports their outcome on the event bus."""

    def __init__(self, events: EventBus) -> None:
        self._events = events
        self._tasks: Set["asyncio.Task[OperationResult]"] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def submit(
        self,
        name: str,
        bot_id: str,
        work: Awaitable[OperationResult],
        done_event: Optional[str] = None,
        failed_event: Optional[str] = None,
        payload: Optional[Callable[[], Any]] = None,
    ) -> "asyncio.Task[OperationResult]":
        job = Job(
            name=name,
            bot_id=bot_id,
            done_event=done_event or f"bot:{name}-done",
            failed_event=failed_event or f"bot:{name}-failed",
            payload=payload,
        )
        task = asyncio.get_running_loop().create_task(self._run(job, work), name=f"{name}:{bot_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, job: Job, work: Awaitable[OperationResult]) -> OperationResult:
        try:
            result = await work
        except Exception as e:  # noqa: BLE001
            logger.error("Unexpected %s error for bot %s: %s", job.name, job.bot_id, e, exc_info=e)
            self._events.publish(job.failed_event, {"id": job.bot_id, "error": str(e)})
            return OperationResult.fail(str(e))

        if result.success:
            data = job.payload() if job.payload else {"id": job.bot_id}
            self._events.publish(job.done_event, data)
        else:
            self._events.publish(job.failed_event, {"id": job.bot_id, "error": result.error})
        return result

    async def join(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
