"""Message bus models: channels, messages, events, subscriptions."""

import fnmatch
import re
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

__all__ = [
    "Channel",
    "ChannelStatistics",
    "Event",
    "EventSource",
    "Message",
    "Priority",
    "Subscription",
    "compile_pattern",
    "new_id",
]


def new_id() -> str:
    return str(uuid.uuid4())


class Priority(str, Enum):
    """Recorded on every message. Advisory only: the queue stays FIFO."""

    LOW = "Low"
    NORMAL = "Normal"
    HIGH = "High"


@dataclass
class ChannelStatistics:
    total_messages: int = 0
    delivered_messages: int = 0
    failed_deliveries: int = 0
    expired_messages: int = 0


@dataclass
class Channel:
    """Named mailbox on the bus. Never deleted automatically."""

    name: str
    description: str = ""
    message_count: int = 0
    subscription_count: int = 0
    statistics: ChannelStatistics = field(default_factory=ChannelStatistics)
    created_at: float = field(default_factory=time.time)
    last_activity: float | None = None


@dataclass
class Message:
    """Unit of transport. Consumed once by the processor, never retried."""

    channel: str
    message_type: str
    data: Any = None
    source_module: str = ""
    priority: Priority = Priority.NORMAL
    id: str = field(default_factory=new_id)
    timestamp: float = field(default_factory=time.time)
    expires_at: float = 0.0
    processed_count: int = 0
    errors: list[str] = field(default_factory=list)

    @classmethod
    def create(
        cls,
        channel: str,
        message_type: str,
        data: Any,
        source_module: str,
        priority: Priority,
        ttl_seconds: float,
        now: float | None = None,
    ) -> "Message":
        ts = time.time() if now is None else now
        return cls(
            channel=channel,
            message_type=message_type,
            data=data,
            source_module=source_module,
            priority=priority,
            timestamp=ts,
            expires_at=ts + ttl_seconds,
        )

    def is_expired(self, now: float | None = None) -> bool:
        return (time.time() if now is None else now) > self.expires_at


@dataclass(frozen=True)
class EventSource:
    module: str = ""
    command: str = ""
    user: str = ""
    machine: str = ""


@dataclass(frozen=True)
class Event:
    """Higher-level notification; delivered inside a Message of type Event:<name>."""

    name: str
    data: Any
    channel: str
    source: EventSource
    id: str = field(default_factory=new_id)
    timestamp: float = field(default_factory=time.time)

    @property
    def message_type(self) -> str:
        return f"Event:{self.name}"

    def to_dict(self, include_data: bool = True) -> dict[str, Any]:
        """Flattened representation used for delivery payloads and exports."""
        d: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "channel": self.channel,
            "timestamp": self.timestamp,
            "source_module": self.source.module,
            "source_command": self.source.command,
            "source_user": self.source.user,
            "source_machine": self.source.machine,
        }
        if include_data:
            d["data"] = self.data
        return d


def compile_pattern(pattern: str) -> re.Pattern[str]:
    """Compile a message-type pattern once. '*' is a wildcard; '' matches everything."""
    return re.compile(fnmatch.translate(pattern or "*"))


@dataclass
class Subscription:
    channel: str
    message_type_pattern: str
    handler: Callable[..., Any]
    subscriber_module: str = ""
    filter: Callable[[Message], bool] | None = None
    run_async: bool = False
    id: str = field(default_factory=new_id)
    created_at: float = field(default_factory=time.time)
    message_count: int = 0
    last_message: float | None = None
    errors: list[str] = field(default_factory=list)
    _matcher: re.Pattern[str] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        self._matcher = compile_pattern(self.message_type_pattern)

    @property
    def key(self) -> tuple[str, str]:
        return (self.channel, self.id)

    def matches_type(self, message_type: str) -> bool:
        return self._matcher.match(message_type) is not None

    def record_error(self, error: str, limit: int) -> None:
        self.errors.append(error)
        if len(self.errors) > limit:
            del self.errors[: len(self.errors) - limit]
