"""Channel registry: named mailboxes with subscriber counts and statistics."""

import logging
import threading
import time

from aither_core.comms.models import Channel
from aither_core.errors import ChannelNotFoundError

logger = logging.getLogger(__name__)


class ChannelRegistry:
    """Thread-safe map of channel name -> Channel."""

    def __init__(self) -> None:
        self._channels: dict[str, Channel] = {}
        self._lock = threading.RLock()

    def create(self, name: str, description: str = "") -> Channel:
        """Idempotent. An existing channel is returned untouched (statistics kept)."""
        with self._lock:
            existing = self._channels.get(name)
            if existing is not None:
                return existing
            channel = Channel(name=name, description=description)
            self._channels[name] = channel
        logger.debug("Channel created: %s", name)
        return channel

    def get(self, name: str) -> Channel:
        with self._lock:
            channel = self._channels.get(name)
        if channel is None:
            raise ChannelNotFoundError(name)
        return channel

    def exists(self, name: str) -> bool:
        with self._lock:
            return name in self._channels

    def all(self) -> list[Channel]:
        with self._lock:
            return list(self._channels.values())

    def names(self) -> list[str]:
        with self._lock:
            return list(self._channels)

    def remove(self, name: str) -> Channel:
        with self._lock:
            channel = self._channels.pop(name, None)
        if channel is None:
            raise ChannelNotFoundError(name)
        logger.debug("Channel removed: %s", name)
        return channel

    def __len__(self) -> int:
        with self._lock:
            return len(self._channels)

    # Counters. Unknown names are ignored: the channel may have been removed
    # while a message for it was in flight.

    def record_published(self, name: str) -> None:
        with self._lock:
            channel = self._channels.get(name)
            if channel:
                channel.message_count += 1
                channel.statistics.total_messages += 1
                channel.last_activity = time.time()

    def record_delivered(self, name: str) -> None:
        with self._lock:
            channel = self._channels.get(name)
            if channel:
                channel.statistics.delivered_messages += 1
                channel.last_activity = time.time()

    def record_failed(self, name: str) -> None:
        with self._lock:
            channel = self._channels.get(name)
            if channel:
                channel.statistics.failed_deliveries += 1

    def record_expired(self, name: str) -> None:
        with self._lock:
            channel = self._channels.get(name)
            if channel:
                channel.statistics.expired_messages += 1

    def adjust_subscriptions(self, name: str, delta: int) -> None:
        with self._lock:
            channel = self._channels.get(name)
            if channel:
                channel.subscription_count = max(0, channel.subscription_count + delta)
