"""Inter-module communication: message bus, events, API registry, middleware, breaker, security."""

from aither_core.comms.api import ApiCallRecord, ApiRegistration, ApiRegistry
from aither_core.comms.bus import MessageBus
from aither_core.comms.circuit_breaker import CircuitBreaker, CircuitState
from aither_core.comms.hub import CommunicationHub
from aither_core.comms.middleware import InvocationContext, MiddlewarePipeline, chain
from aither_core.comms.models import Channel, Event, EventSource, Message, Priority, Subscription
from aither_core.comms.security import SecurityContext

__all__ = [
    "ApiCallRecord",
    "ApiRegistration",
    "ApiRegistry",
    "Channel",
    "CircuitBreaker",
    "CircuitState",
    "CommunicationHub",
    "Event",
    "EventSource",
    "InvocationContext",
    "Message",
    "MessageBus",
    "MiddlewarePipeline",
    "Priority",
    "SecurityContext",
    "Subscription",
    "chain",
]
