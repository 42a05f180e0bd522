"""
Broadcast Hub

Fans ban events, heartbeats and console log lines out to live observers
(WebSocket clients). One coordinator task owns the observer set; register,
unregister and broadcast requests all arrive on its bounded inbox and are
handled one at a time, so the observer set is never touched concurrently.

Publishing never blocks: when the inbox is full the message is dropped with
a warning. Each observer has its own bounded queue; an observer whose queue
is full is dropped rather than allowed to stall everyone else.
"""

import asyncio
import logging
import secrets
import time
from typing import Any, AsyncIterator, Dict, Optional, Set, Tuple

from ..core.models import BanEvent, EventKind

logger = logging.getLogger(__name__)

DEFAULT_HEARTBEAT_INTERVAL = 30.0
DEFAULT_INBOX_SIZE = 256
DEFAULT_OBSERVER_QUEUE_SIZE = 256

_REGISTER = "register"
_UNREGISTER = "unregister"
_BROADCAST = "broadcast"

Message = Dict[str, Any]


class Observer:
    """
    One subscriber's view of the hub.

    ``None`` on the queue means the hub closed this observer; iteration
    stops there.
    """

    def __init__(self, queue_size: int = DEFAULT_OBSERVER_QUEUE_SIZE):
        self.id = secrets.token_hex(4)
        self.queue: "asyncio.Queue[Optional[Message]]" = asyncio.Queue(maxsize=queue_size)
        self.closed = False

    def close(self) -> None:
        """Discard pending messages and enqueue the closing sentinel."""
        if self.closed:
            return
        self.closed = True
        while not self.queue.empty():
            self.queue.get_nowait()
        self.queue.put_nowait(None)

    async def messages(self) -> AsyncIterator[Message]:
        while True:
            message = await self.queue.get()
            if message is None:
                return
            yield message

    def __repr__(self) -> str:
        return f"<Observer {self.id}>"


def heartbeat_message() -> Message:
    return {"type": "heartbeat", "time": int(time.time()), "status": "healthy"}


def event_message(event: BanEvent) -> Message:
    kind = "ban_event" if event.kind == EventKind.BAN else "unban_event"
    return {"type": kind, "data": event.to_dict()}


def console_message(line: str) -> Message:
    return {"type": "console_log", "message": line}


class BroadcastHub:
    """
    Coordinator for observer fan-out.

    Usage:
        hub = BroadcastHub()
        await hub.start()
        observer = await hub.register()
        hub.publish_event(event)
        async for message in observer.messages():
            ...
    """

    def __init__(
        self,
        heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL,
        inbox_size: int = DEFAULT_INBOX_SIZE,
        observer_queue_size: int = DEFAULT_OBSERVER_QUEUE_SIZE,
    ):
        self.heartbeat_interval = heartbeat_interval
        self.observer_queue_size = observer_queue_size
        self._inbox: "asyncio.Queue[Tuple[str, Any]]" = asyncio.Queue(maxsize=inbox_size)
        self._observers: Set[Observer] = set()
        self._task: Optional[asyncio.Task] = None
        self.loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def observer_count(self) -> int:
        return len(self._observers)

    async def start(self) -> None:
        if self.running:
            return
        self.loop = asyncio.get_running_loop()
        self._task = asyncio.create_task(self._run(), name="broadcast-hub")
        logger.info("Broadcast hub started")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        for observer in list(self._observers):
            observer.close()
        self._observers.clear()
        logger.info("Broadcast hub stopped")

    # =========================================================================
    # Requests
    # =========================================================================

    async def register(self) -> Observer:
        observer = Observer(self.observer_queue_size)
        await self._inbox.put((_REGISTER, observer))
        return observer

    async def unregister(self, observer: Observer) -> None:
        if not self.running:
            observer.close()
            return
        await self._inbox.put((_UNREGISTER, observer))

    def unregister_nowait(self, observer: Observer) -> None:
        """
        Unregister without waiting on the inbox.

        When the inbox is full the observer is closed directly and the
        coordinator drops it on the next broadcast.
        """
        if self.running:
            try:
                self._inbox.put_nowait((_UNREGISTER, observer))
                return
            except asyncio.QueueFull:
                logger.warning(f"Broadcast queue full, closing {observer} directly")
        observer.close()

    def publish(self, message: Message) -> bool:
        """
        Queue ``message`` for every observer.

        Returns:
            False if the inbox was full and the message was dropped
        """
        try:
            self._inbox.put_nowait((_BROADCAST, message))
        except asyncio.QueueFull:
            logger.warning(f"Broadcast queue full, dropping {message.get('type')} message")
            return False
        return True

    def publish_event(self, event: BanEvent) -> bool:
        return self.publish(event_message(event))

    # =========================================================================
    # Coordinator
    # =========================================================================

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        next_heartbeat = loop.time() + self.heartbeat_interval
        while True:
            timeout = max(0.0, next_heartbeat - loop.time())
            try:
                kind, payload = await asyncio.wait_for(self._inbox.get(), timeout=timeout)
            except asyncio.TimeoutError:
                self._broadcast(heartbeat_message())
                next_heartbeat = loop.time() + self.heartbeat_interval
                continue

            if kind == _REGISTER:
                self._observers.add(payload)
                logger.debug(f"Registered {payload}, {len(self._observers)} observer(s)")
            elif kind == _UNREGISTER:
                if payload in self._observers:
                    self._observers.discard(payload)
                    logger.debug(f"Unregistered {payload}, {len(self._observers)} observer(s)")
                payload.close()
            elif kind == _BROADCAST:
                self._broadcast(payload)

    def _broadcast(self, message: Message) -> None:
        for observer in list(self._observers):
            if observer.closed:
                self._observers.discard(observer)
                continue
            try:
                observer.queue.put_nowait(message)
            except asyncio.QueueFull:
                logger.warning(f"{observer} is not keeping up, dropping it")
                self._observers.discard(observer)
                observer.close()
