from __future__ import annotations

import asyncio
import inspect
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Union

from gatehouse.logging import get_logger
from gatehouse.service.clock import Clock, SystemClock

logger = get_logger(__name__)

DEFAULT_QUEUE_SIZE = 1000
DEFAULT_HISTORY_SIZE = 1000


class EventType(str, Enum):
    USER_REGISTERED = "user:registered"
    USER_LOGGED_IN = "user:logged_in"
    USER_LOGGED_OUT = "user:logged_out"
    USER_UPDATED = "user:updated"
    USER_DELETED = "user:deleted"
    USER_DEACTIVATED = "user:deactivated"
    USER_RESTORED = "user:restored"
    USER_PASSWORD_CHANGED = "user:password_changed"
    AUTH_TOKEN_REFRESHED = "auth:token_refreshed"
    AUTH_FAILED = "auth:failed"


@dataclass(frozen=True)
class DomainEvent:
    type: str
    payload: Dict[str, Any]
    occurred_at: datetime
    id: str = field(default_factory=lambda: str(uuid.uuid4()))


Handler = Callable[[DomainEvent], Union[None, Awaitable[None]]]


@dataclass
class _Subscription:
    handler: Handler
    once: bool = False


def _type_name(event_type: Any) -> str:
    return getattr(event_type, "value", event_type)


class EventBus:
    """In-process fan-out of domain events.

    ``publish`` only enqueues; a dispatcher task started with ``start()``
    delivers each event to its subscribers in order. A failing handler is
    logged and does not stop delivery to the others.
    """

    def __init__(
        self,
        clock: Optional[Clock] = None,
        *,
        queue_size: int = DEFAULT_QUEUE_SIZE,
        history_size: int = DEFAULT_HISTORY_SIZE,
    ) -> None:
        self.clock = clock or SystemClock()
        self._subscribers: Dict[str, List[_Subscription]] = {}
        self._queue: asyncio.Queue[DomainEvent] = asyncio.Queue(maxsize=queue_size)
        self._history: Deque[DomainEvent] = deque(maxlen=history_size)
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self.dropped = 0

    # -- subscriptions -----------------------------------------------------

    def subscribe(self, event_type: Any, handler: Handler, *, once: bool = False) -> None:
        name = _type_name(event_type)
        self._subscribers.setdefault(name, []).append(_Subscription(handler, once))
        logger.debug("event_subscribed", event_type=name, once=once)

    def unsubscribe(self, event_type: Any, handler: Handler) -> bool:
        name = _type_name(event_type)
        subs = self._subscribers.get(name, [])
        remaining = [s for s in subs if s.handler != handler]
        if len(remaining) == len(subs):
            return False
        if remaining:
            self._subscribers[name] = remaining
        else:
            self._subscribers.pop(name, None)
        logger.debug("event_unsubscribed", event_type=name)
        return True

    def _drop(self, name: str, subscription: _Subscription) -> None:
        remaining = [s for s in self._subscribers.get(name, []) if s is not subscription]
        if remaining:
            self._subscribers[name] = remaining
        else:
            self._subscribers.pop(name, None)

    def registered_events(self) -> List[str]:
        return sorted(self._subscribers)

    # -- publishing --------------------------------------------------------

    def publish(self, event_type: Any, payload: Optional[Dict[str, Any]] = None) -> Optional[DomainEvent]:
        """Enqueue an event without waiting for any handler.

        Returns the event, or None when the queue is full and it was dropped.
        """
        event = DomainEvent(
            type=_type_name(event_type),
            payload=dict(payload or {}),
            occurred_at=self.clock.now(),
        )
        self._history.append(event)
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                "event_dropped_queue_full",
                event_type=event.type,
                queue_size=self._queue.maxsize,
            )
            return None
        logger.debug(
            "event_published",
            event_type=event.type,
            listener_count=len(self._subscribers.get(event.type, [])),
        )
        return event

    async def dispatch(self, event: DomainEvent) -> None:
        """Deliver one event to its current subscribers."""
        subs = list(self._subscribers.get(event.type, []))
        for sub in subs:
            if sub.once:
                self._drop(event.type, sub)
            started = time.perf_counter()
            try:
                result = sub.handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                logger.error(
                    "event_handler_failed",
                    event_type=event.type,
                    event_id=event.id,
                    handler=getattr(sub.handler, "__qualname__", repr(sub.handler)),
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                continue
            logger.debug(
                "event_handled",
                event_type=event.type,
                duration_ms=round((time.perf_counter() - started) * 1000, 3),
            )

    # -- lifecycle ---------------------------------------------------------

    async def start(self) -> None:
        if self._running:
            logger.warning("event_bus_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("event_bus_started")

    async def stop(self) -> None:
        """Deliver what is already queued, then stop the dispatcher."""
        if self._running:
            await self.join()
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("event_bus_stopped")

    async def join(self) -> None:
        """Wait until every queued event has been delivered."""
        if self._task is None:
            # Not started: deliver inline so callers still observe effects
            while not self._queue.empty():
                event = self._queue.get_nowait()
                try:
                    await self.dispatch(event)
                finally:
                    self._queue.task_done()
            return
        await self._queue.join()

    async def _run_loop(self) -> None:
        while self._running:
            event = await self._queue.get()
            try:
                await self.dispatch(event)
            finally:
                self._queue.task_done()

    # -- history -----------------------------------------------------------

    def history(self, event_type: Any = None) -> List[DomainEvent]:
        if event_type is None:
            return list(self._history)
        name = _type_name(event_type)
        return [e for e in self._history if e.type == name]

    def clear_history(self) -> None:
        self._history.clear()
