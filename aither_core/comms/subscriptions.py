"""Subscription table: (channel, message-type pattern) -> handler."""

import logging
import threading
from typing import Any, Callable

from aither_core.comms.models import Message, Subscription
from aither_core.errors import SubscriptionNotFoundError

logger = logging.getLogger(__name__)


class SubscriptionTable:
    """Subscriptions keyed by (channel, id). Patterns are compiled on add()."""

    def __init__(self, max_errors: int = 100) -> None:
        self._subs: dict[tuple[str, str], Subscription] = {}
        self._by_id: dict[str, tuple[str, str]] = {}
        self._lock = threading.RLock()
        self._max_errors = max_errors

    def add(
        self,
        channel: str,
        message_type_pattern: str,
        handler: Callable[..., Any],
        subscriber_module: str = "",
        filter: Callable[[Message], bool] | None = None,
        run_async: bool = False,
    ) -> Subscription:
        sub = Subscription(
            channel=channel,
            message_type_pattern=message_type_pattern,
            handler=handler,
            subscriber_module=subscriber_module,
            filter=filter,
            run_async=run_async,
        )
        with self._lock:
            self._subs[sub.key] = sub
            self._by_id[sub.id] = sub.key
        return sub

    def get(self, subscription_id: str) -> Subscription:
        with self._lock:
            key = self._by_id.get(subscription_id)
            if key is None:
                raise SubscriptionNotFoundError(subscription_id)
            return self._subs[key]

    def remove(self, subscription_id: str) -> Subscription:
        with self._lock:
            key = self._by_id.pop(subscription_id, None)
            if key is None:
                raise SubscriptionNotFoundError(subscription_id)
            return self._subs.pop(key)

    def _remove_where(self, predicate: Callable[[Subscription], bool]) -> list[Subscription]:
        with self._lock:
            doomed = [s for s in self._subs.values() if predicate(s)]
            for s in doomed:
                del self._subs[s.key]
                self._by_id.pop(s.id, None)
        return doomed

    def remove_by_channel(self, channel: str) -> list[Subscription]:
        return self._remove_where(lambda s: s.channel == channel)

    def remove_by_module(self, module: str) -> list[Subscription]:
        return self._remove_where(lambda s: s.subscriber_module == module)

    def query(self, channel: str | None = None, module: str | None = None) -> list[Subscription]:
        with self._lock:
            subs = list(self._subs.values())
        if channel is not None:
            subs = [s for s in subs if s.channel == channel]
        if module is not None:
            subs = [s for s in subs if s.subscriber_module == module]
        return subs

    def matching(self, message: Message) -> list[Subscription]:
        """Subscriptions on the message's channel whose pattern and filter accept it."""
        with self._lock:
            candidates = [
                s
                for s in self._subs.values()
                if s.channel == message.channel and s.matches_type(message.message_type)
            ]
        result: list[Subscription] = []
        for sub in candidates:
            if sub.filter is None:
                result.append(sub)
                continue
            try:
                if sub.filter(message):
                    result.append(sub)
            except Exception as e:
                logger.warning(
                    "Subscription filter %s failed for message %s: %s", sub.id, message.id, e
                )
                sub.record_error(f"filter: {e}", self._max_errors)
        return result

    def record_error(self, sub: Subscription, error: str) -> None:
        with self._lock:
            sub.record_error(error, self._max_errors)

    def __len__(self) -> int:
        with self._lock:
            return len(self._subs)
