"""In-process message bus: bounded FIFO queue, background processor, handler dispatch.

Publishing never blocks: a full queue raises QueueFullError. The processor is a
single asyncio task that dequeues in FIFO order and dispatches every matching
handler as its own task; sync handlers run in worker threads, so a slow or
blocking handler never stalls the queue. Handler concurrency is capped by a
semaphore. A subscription sees its messages one at a time, in order, unless it
was made with run_async.
"""

import asyncio
import fnmatch
import getpass
import inspect
import logging
import socket
import threading
import time
from collections import deque
from typing import Any, Callable

from aither_core.comms.channels import ChannelRegistry
from aither_core.comms.history import EventHistory
from aither_core.comms.models import (
    Channel,
    Event,
    EventSource,
    Message,
    Priority,
    Subscription,
)
from aither_core.comms.subscriptions import SubscriptionTable
from aither_core.errors import CommunicationError, QueueFullError

logger = logging.getLogger(__name__)

DEFAULT_EVENT_CHANNEL = "Events"


def _current_user() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return ""


class MessageBus:
    """Channels + subscriptions + queue + processor. Owned by the CommunicationHub."""

    def __init__(
        self,
        channels: ChannelRegistry | None = None,
        subscriptions: SubscriptionTable | None = None,
        history: EventHistory | None = None,
        max_queue_size: int = 1000,
        default_ttl_seconds: float = 300,
        max_concurrent_handlers: int = 10,
        poll_interval: float = 0.5,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.channels = channels or ChannelRegistry()
        self.subscriptions = subscriptions or SubscriptionTable()
        self.history = history or EventHistory()
        self._max_queue_size = max_queue_size
        self._default_ttl = default_ttl_seconds
        self._max_concurrent_handlers = max_concurrent_handlers
        self._poll_interval = poll_interval
        self._clock = clock
        self._queue: deque[Message] = deque()
        self._lock = threading.Lock()
        self._wake = asyncio.Event()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._semaphore: asyncio.Semaphore | None = None
        self._processor_task: asyncio.Task[None] | None = None
        self._handler_tasks: set[asyncio.Task[None]] = set()
        self._ordering: dict[str, asyncio.Lock] = {}
        self._stopped = True
        self._user = _current_user()
        self._machine = socket.gethostname()
        self._stats = {
            "published": 0,
            "processed": 0,
            "delivered": 0,
            "handler_failures": 0,
            "expired": 0,
            "dropped_no_subscribers": 0,
        }

    # -- properties ---------------------------------------------------------

    @property
    def max_queue_size(self) -> int:
        return self._max_queue_size

    @property
    def queue_size(self) -> int:
        with self._lock:
            return len(self._queue)

    @property
    def is_running(self) -> bool:
        return self._processor_task is not None and not self._processor_task.done()

    @property
    def stats(self) -> dict[str, int]:
        with self._lock:
            return dict(self._stats)

    def _count(self, key: str, n: int = 1) -> None:
        with self._lock:
            self._stats[key] += n

    # -- channels -------------------------------------------------------------

    def create_channel(self, name: str, description: str = "") -> Channel:
        return self.channels.create(name, description)

    def remove_channel(self, name: str, force: bool = False) -> int:
        """Remove a channel. Channels with subscribers need force. Returns dropped messages."""
        channel = self.channels.get(name)
        if channel.subscription_count and not force:
            raise CommunicationError(
                f"Channel {name} has {channel.subscription_count} subscriptions; pass force=True"
            )
        for sub in self.subscriptions.remove_by_channel(name):
            self._ordering.pop(sub.id, None)
        dropped = self.clear_queue(channel=name)
        self.channels.remove(name)
        return dropped

    # -- publish / subscribe -------------------------------------------------

    def publish(
        self,
        channel: str,
        message_type: str,
        data: Any = None,
        source_module: str = "",
        priority: Priority = Priority.NORMAL,
        ttl_seconds: float | None = None,
    ) -> str:
        """Enqueue a message and return its id. Thread-safe, never blocks."""
        if not self.channels.exists(channel):
            logger.warning("Channel %s does not exist, creating it", channel)
            self.channels.create(channel)
        ttl = self._default_ttl if ttl_seconds is None else ttl_seconds
        message = Message.create(
            channel, message_type, data, source_module, Priority(priority), ttl, now=self._clock()
        )
        with self._lock:
            if len(self._queue) >= self._max_queue_size:
                raise QueueFullError(self._max_queue_size)
            self._queue.append(message)
            self._stats["published"] += 1
        self.channels.record_published(channel)
        if message.priority is Priority.HIGH:
            logger.debug("High priority message %s on %s", message.id, channel)
        self._notify()
        return message.id

    def subscribe(
        self,
        channel: str,
        message_type_pattern: str,
        handler: Callable[..., Any],
        subscriber_module: str = "",
        filter: Callable[[Message], bool] | None = None,
        run_async: bool = False,
    ) -> str:
        """Register a handler. Async handlers are awaited, sync ones run in a worker
        thread. With run_async, consecutive messages may be handled concurrently."""
        if not self.channels.exists(channel):
            self.channels.create(channel)
        sub = self.subscriptions.add(
            channel, message_type_pattern, handler, subscriber_module, filter, run_async
        )
        self.channels.adjust_subscriptions(channel, +1)
        logger.debug(
            "Subscribed %s to %s/%s (%s)",
            subscriber_module or "<anonymous>",
            channel,
            message_type_pattern,
            sub.id,
        )
        return sub.id

    def unsubscribe(
        self,
        subscription_id: str | None = None,
        channel: str | None = None,
        module: str | None = None,
    ) -> int:
        """Remove by id, by channel or by owning module. Returns number removed."""
        if subscription_id is not None:
            removed = [self.subscriptions.remove(subscription_id)]
        elif channel is not None:
            removed = self.subscriptions.remove_by_channel(channel)
        elif module is not None:
            removed = self.subscriptions.remove_by_module(module)
        else:
            raise ValueError("unsubscribe needs subscription_id, channel or module")
        for sub in removed:
            self.channels.adjust_subscriptions(sub.channel, -1)
            self._ordering.pop(sub.id, None)
        return len(removed)

    def get_subscriptions(
        self, channel: str | None = None, module: str | None = None
    ) -> list[Subscription]:
        return self.subscriptions.query(channel=channel, module=module)

    # -- events ---------------------------------------------------------------

    def send_event(
        self,
        name: str,
        data: Any = None,
        channel: str = DEFAULT_EVENT_CHANNEL,
        source_module: str = "",
        command: str = "",
        priority: Priority = Priority.NORMAL,
        persist: bool = True,
        broadcast: bool = False,
        ttl_seconds: float | None = None,
    ) -> Event:
        """Publish an Event:<name> message; optionally to every channel and into history."""
        self.channels.create(channel)
        event = Event(
            name=name,
            data=data,
            channel=channel,
            source=EventSource(
                module=source_module, command=command, user=self._user, machine=self._machine
            ),
            timestamp=self._clock(),
        )
        targets = self.channels.names() if broadcast else [channel]
        payload = event.to_dict()
        for target in targets:
            self.publish(target, event.message_type, payload, source_module, priority, ttl_seconds)
        if persist:
            self.history.append(event)
        return event

    # -- queue maintenance ---------------------------------------------------

    def clear_queue(self, channel: str | None = None, message_type: str | None = None) -> int:
        """Drop queued messages matching the filters; others keep their order."""
        with self._lock:
            kept: deque[Message] = deque()
            removed = 0
            for m in self._queue:
                if (channel is None or m.channel == channel) and (
                    message_type is None or fnmatch.fnmatchcase(m.message_type, message_type)
                ):
                    removed += 1
                else:
                    kept.append(m)
            self._queue = kept
        if removed:
            logger.info("Cleared %d queued messages", removed)
        return removed

    def _dequeue(self) -> Message | None:
        with self._lock:
            return self._queue.popleft() if self._queue else None

    # -- processor ------------------------------------------------------------

    def _notify(self) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._wake.set()
        else:
            loop.call_soon_threadsafe(self._wake.set)

    async def start(self) -> None:
        """Start the processor task. Messages published before start are kept."""
        if self.is_running:
            return
        self._loop = asyncio.get_running_loop()
        self._semaphore = asyncio.Semaphore(self._max_concurrent_handlers)
        self._stopped = False
        self._processor_task = asyncio.create_task(self._process_loop())
        if self.queue_size:
            self._wake.set()
        logger.info("Message processor started")

    async def stop(self, drain: bool = True) -> None:
        """Stop the processor. With drain, remaining messages are dispatched and
        in-flight handlers awaited; otherwise handlers are cancelled."""
        self._stopped = True
        self._wake.set()
        if self._processor_task:
            try:
                await self._processor_task
            except asyncio.CancelledError:
                pass
            self._processor_task = None
        if drain and self._semaphore is not None:
            await self._drain(stopping=True)
        tasks = list(self._handler_tasks)
        if not drain:
            for t in tasks:
                t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Message processor stopped")

    async def _process_loop(self) -> None:
        while not self._stopped:
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self._poll_interval)
            except asyncio.TimeoutError:
                pass
            self._wake.clear()
            if self._stopped:
                break
            try:
                await self._drain()
            except Exception as e:
                logger.exception("Message processor iteration failed: %s", e)

    async def _drain(self, stopping: bool = False) -> None:
        while stopping or not self._stopped:
            message = self._dequeue()
            if message is None:
                return
            self._dispatch(message)
            # let dispatched handlers start between messages
            await asyncio.sleep(0)

    def _dispatch(self, message: Message) -> None:
        if message.is_expired(self._clock()):
            self._count("expired")
            self.channels.record_expired(message.channel)
            logger.debug("Dropping expired message %s on %s", message.id, message.channel)
            return
        subs = self.subscriptions.matching(message)
        if not subs:
            self._count("dropped_no_subscribers")
            return
        self._count("processed")
        for sub in subs:
            task = asyncio.create_task(self._run_handler(sub, message))
            self._handler_tasks.add(task)
            task.add_done_callback(self._handler_tasks.discard)

    async def _run_handler(self, sub: Subscription, message: Message) -> None:
        if sub.run_async:
            await self._invoke_handler(sub, message)
            return
        lock = self._ordering.setdefault(sub.id, asyncio.Lock())
        async with lock:
            await self._invoke_handler(sub, message)

    async def _invoke_handler(self, sub: Subscription, message: Message) -> None:
        assert self._semaphore is not None
        async with self._semaphore:
            try:
                if inspect.iscoroutinefunction(sub.handler):
                    result = sub.handler(message)
                else:
                    result = await asyncio.to_thread(sub.handler, message)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.exception(
                    "Handler %s (%s) failed for message %s/%s: %s",
                    sub.id,
                    sub.subscriber_module or "<anonymous>",
                    message.channel,
                    message.message_type,
                    e,
                )
                self.subscriptions.record_error(sub, f"{type(e).__name__}: {e}")
                message.errors.append(f"{sub.id}: {e}")
                self.channels.record_failed(message.channel)
                self._count("handler_failures")
                return
        sub.message_count += 1
        sub.last_message = time.time()
        message.processed_count += 1
        self.channels.record_delivered(message.channel)
        self._count("delivered")
