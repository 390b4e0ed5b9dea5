"""CommunicationHub: process-lifetime owner of the bus, APIs, middleware, breaker and security."""

import logging
import time
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping

from aither_core.comms.api import ApiCallRecord, ApiRegistration, ApiRegistry
from aither_core.comms.bus import DEFAULT_EVENT_CHANNEL, MessageBus
from aither_core.comms.channels import ChannelRegistry
from aither_core.comms.circuit_breaker import CircuitBreaker
from aither_core.comms.history import EventHistory, ExportFormat
from aither_core.comms.middleware import (
    DEFAULT_MIDDLEWARE_PRIORITY,
    LOGGING_MIDDLEWARE_PRIORITY,
    SECURITY_MIDDLEWARE_PRIORITY,
    Middleware,
    MiddlewareEntry,
    MiddlewarePipeline,
    logging_middleware,
)
from aither_core.comms.models import Channel, Event, Message, Priority, Subscription
from aither_core.comms.security import SecurityContext
from aither_core.comms.subscriptions import SubscriptionTable
from aither_core.settings import get_setting

logger = logging.getLogger(__name__)

SECURITY_MIDDLEWARE = "Security"
LOGGING_MIDDLEWARE = "Logging"
_DEGRADED_QUEUE_RATIO = 0.8


class CommunicationHub:
    """Single entry point for inter-module communication. Create one per process."""

    def __init__(
        self,
        max_queue_size: int = 1000,
        default_ttl_seconds: float = 300,
        max_event_history: int = 1000,
        max_concurrent_handlers: int = 10,
        poll_interval: float = 0.5,
        max_subscription_errors: int = 100,
        default_timeout: float = 30.0,
        call_history_size: int = 1000,
        retry_base_delay: float = 1.0,
        retry_max_delay: float = 30.0,
        failure_threshold: int = 5,
        cooldown_seconds: float = 60.0,
        log_calls: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.bus = MessageBus(
            channels=ChannelRegistry(),
            subscriptions=SubscriptionTable(max_errors=max_subscription_errors),
            history=EventHistory(max_size=max_event_history),
            max_queue_size=max_queue_size,
            default_ttl_seconds=default_ttl_seconds,
            max_concurrent_handlers=max_concurrent_handlers,
            poll_interval=poll_interval,
            clock=clock,
        )
        self.middleware = MiddlewarePipeline()
        self.breaker = CircuitBreaker(
            failure_threshold=failure_threshold, cooldown_seconds=cooldown_seconds
        )
        self.apis = ApiRegistry(
            pipeline=self.middleware,
            breaker=self.breaker,
            default_timeout=default_timeout,
            call_history_size=call_history_size,
            retry_base_delay=retry_base_delay,
            retry_max_delay=retry_max_delay,
        )
        self.security: SecurityContext | None = None
        self._started_at: float | None = None
        if log_calls:
            self.middleware.add(LOGGING_MIDDLEWARE, logging_middleware, LOGGING_MIDDLEWARE_PRIORITY)

    @classmethod
    def from_settings(cls, settings: Mapping[str, Any]) -> "CommunicationHub":
        """Build a hub from the comms/api/circuit_breaker sections of settings.yaml."""
        s = dict(settings)
        return cls(
            max_queue_size=get_setting(s, "comms.max_queue_size", 1000),
            default_ttl_seconds=get_setting(s, "comms.default_ttl_seconds", 300),
            max_event_history=get_setting(s, "comms.max_event_history", 1000),
            max_concurrent_handlers=get_setting(s, "comms.max_concurrent_handlers", 10),
            poll_interval=get_setting(s, "comms.poll_interval", 0.5),
            max_subscription_errors=get_setting(s, "comms.max_subscription_errors", 100),
            default_timeout=get_setting(s, "api.default_timeout", 30.0),
            call_history_size=get_setting(s, "api.call_history_size", 1000),
            retry_base_delay=get_setting(s, "api.retry_base_delay", 1.0),
            retry_max_delay=get_setting(s, "api.retry_max_delay", 30.0),
            log_calls=get_setting(s, "api.log_calls", True),
            failure_threshold=get_setting(s, "circuit_breaker.failure_threshold", 5),
            cooldown_seconds=get_setting(s, "circuit_breaker.cooldown_seconds", 60.0),
        )

    # -- lifecycle ----------------------------------------------------------------

    async def start(self) -> None:
        await self.bus.start()
        self._started_at = time.time()
        logger.info("Communication hub started")

    async def close(self, drain: bool = True) -> None:
        """Drain the queue, wait for handlers and stop the processor."""
        await self.bus.stop(drain=drain)
        self._started_at = None
        logger.info("Communication hub closed")

    async def __aenter__(self) -> "CommunicationHub":
        await self.start()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    @property
    def is_running(self) -> bool:
        return self.bus.is_running

    # -- channels -----------------------------------------------------------------

    def create_channel(self, name: str, description: str = "") -> Channel:
        return self.bus.create_channel(name, description)

    def remove_channel(self, name: str, force: bool = False) -> int:
        return self.bus.remove_channel(name, force=force)

    def get_channels(self) -> list[Channel]:
        return self.bus.channels.all()

    def get_channel(self, name: str) -> Channel:
        return self.bus.channels.get(name)

    # -- messages -----------------------------------------------------------------

    def publish(
        self,
        channel: str,
        message_type: str,
        data: Any = None,
        source_module: str = "",
        priority: Priority = Priority.NORMAL,
        ttl_seconds: float | None = None,
    ) -> str:
        return self.bus.publish(channel, message_type, data, source_module, priority, ttl_seconds)

    def subscribe(
        self,
        channel: str,
        message_type_pattern: str,
        handler: Callable[..., Any],
        subscriber_module: str = "",
        filter: Callable[[Message], bool] | None = None,
        run_async: bool = False,
    ) -> str:
        return self.bus.subscribe(
            channel, message_type_pattern, handler, subscriber_module, filter, run_async
        )

    def unsubscribe(
        self,
        subscription_id: str | None = None,
        channel: str | None = None,
        module: str | None = None,
    ) -> int:
        return self.bus.unsubscribe(subscription_id, channel, module)

    def get_subscriptions(
        self, channel: str | None = None, module: str | None = None
    ) -> list[Subscription]:
        return self.bus.get_subscriptions(channel, module)

    def clear_queue(self, channel: str | None = None, message_type: str | None = None) -> int:
        return self.bus.clear_queue(channel, message_type)

    # -- events -------------------------------------------------------------------

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
        return self.bus.send_event(
            name,
            data,
            channel=channel,
            source_module=source_module,
            command=command,
            priority=priority,
            persist=persist,
            broadcast=broadcast,
            ttl_seconds=ttl_seconds,
        )

    def subscribe_event(
        self,
        name: str,
        handler: Callable[..., Any],
        channel: str = DEFAULT_EVENT_CHANNEL,
        subscriber_module: str = "",
        run_async: bool = False,
    ) -> str:
        """Subscribe to Event:<name> ('*' wildcards allowed in name)."""
        return self.subscribe(channel, f"Event:{name}", handler, subscriber_module, run_async=run_async)

    def get_event_history(
        self,
        name: str | None = None,
        channel: str | None = None,
        since: float | None = None,
        limit: int | None = None,
    ) -> list[Event]:
        return self.bus.history.query(name, channel, since, limit)

    def clear_event_history(
        self,
        name: str | None = None,
        channel: str | None = None,
        older_than: float | None = None,
    ) -> int:
        return self.bus.history.clear(name, channel, older_than)

    def export_event_history(
        self,
        path: Path,
        fmt: ExportFormat = "json",
        include_data: bool = False,
        name: str | None = None,
        channel: str | None = None,
    ) -> int:
        events = self.bus.history.query(name=name, channel=channel)
        return self.bus.history.export(path, fmt, include_data, events=events)

    # -- APIs ---------------------------------------------------------------------

    def register_api(
        self,
        module: str,
        operation: str,
        handler: Callable[..., Any],
        parameters: Mapping[str, Any] | None = None,
        middleware: list[Middleware] | None = None,
        description: str = "",
        update: bool = False,
    ) -> ApiRegistration:
        return self.apis.register(
            module, operation, handler, parameters, middleware, description, update
        )

    def unregister_api(self, module: str, operation: str) -> bool:
        return self.apis.unregister(module, operation)

    def get_apis(self, module: str | None = None) -> list[ApiRegistration]:
        return self.apis.query(module)

    async def invoke_api(
        self,
        module: str,
        operation: str,
        parameters: Mapping[str, Any] | None = None,
        **options: Any,
    ) -> Any:
        """See ApiRegistry.invoke for options (run_async, timeout, retry_attempts, ...)."""
        return await self.apis.invoke(module, operation, parameters, **options)

    def get_call_history(self, api: str | None = None, limit: int | None = None) -> list[ApiCallRecord]:
        return self.apis.call_history(api, limit)

    # -- middleware -----------------------------------------------------------------

    def add_middleware(
        self, name: str, handler: Middleware, priority: int = DEFAULT_MIDDLEWARE_PRIORITY
    ) -> None:
        self.middleware.add(name, handler, priority)

    def remove_middleware(self, name: str) -> bool:
        return self.middleware.remove(name)

    def get_middleware(self) -> list[MiddlewareEntry]:
        return self.middleware.entries()

    # -- circuit breaker ------------------------------------------------------------

    def get_circuit_breaker_status(self, operation: str | None = None) -> dict[str, Any]:
        return self.breaker.get_status(operation)

    def reset_circuit_breaker(self, operation: str) -> None:
        self.breaker.reset(operation)

    # -- security -------------------------------------------------------------------

    def enable_security(
        self,
        default_token_expiration_minutes: float = 60,
        require_authentication: bool = True,
        allowed_modules: Iterable[str] | None = None,
    ) -> SecurityContext:
        """Install the security middleware at the highest priority."""
        self.security = SecurityContext(
            default_expiration_minutes=default_token_expiration_minutes,
            require_authentication=require_authentication,
            allowed_modules=allowed_modules,
        )
        self.middleware.add(
            SECURITY_MIDDLEWARE,
            self.security.middleware,
            SECURITY_MIDDLEWARE_PRIORITY,
            mandatory=True,
        )
        logger.info(
            "Security enabled (require_authentication=%s, allowed_modules=%s)",
            require_authentication,
            sorted(self.security.allowed_modules) or "any",
        )
        return self.security

    def disable_security(self) -> None:
        self.middleware.remove(SECURITY_MIDDLEWARE)
        self.security = None
        logger.warning("Security disabled")

    def _require_security(self) -> SecurityContext:
        if self.security is None:
            raise RuntimeError("Security is not enabled; call enable_security() first")
        return self.security

    def issue_token(
        self,
        module: str,
        user: str = "",
        expiration_minutes: float | None = None,
        scopes: Iterable[str] = ("api:call",),
    ) -> str:
        return self._require_security().issue_token(module, user, expiration_minutes, scopes)

    def revoke_token(
        self,
        token: str | None = None,
        module: str | None = None,
        user: str | None = None,
        force: bool = False,
        confirm: Callable[[str], bool] | None = None,
    ) -> int:
        return self._require_security().revoke_token(token, module, user, force, confirm)

    # -- introspection ----------------------------------------------------------------

    def get_metrics(self) -> dict[str, Any]:
        bus_stats = self.bus.stats
        return {
            "messages": bus_stats,
            "queue_size": self.bus.queue_size,
            "max_queue_size": self.bus.max_queue_size,
            "channels": len(self.bus.channels),
            "subscriptions": len(self.bus.subscriptions),
            "event_history_size": len(self.bus.history),
            "apis": self.apis.metrics(),
            "circuit_breakers": {
                k: v for k, v in self.breaker.get_status().items() if k != "operations"
            },
        }

    def get_status(self) -> dict[str, Any]:
        running = self.is_running
        queue_ratio = self.bus.queue_size / self.bus.max_queue_size if self.bus.max_queue_size else 0.0
        breakers = self.breaker.get_status()
        if not running:
            health = "Stopped"
        elif queue_ratio > _DEGRADED_QUEUE_RATIO or breakers["open"]:
            health = "Degraded"
        else:
            health = "Healthy"
        return {
            "running": running,
            "health": health,
            "uptime_seconds": round(time.time() - self._started_at, 3) if self._started_at else 0.0,
            "queue_utilization": round(queue_ratio * 100, 2),
            "security_enabled": self.security is not None,
            "middleware": [e.name for e in self.middleware.entries()],
            "channels": [c.name for c in self.bus.channels.all()],
            "open_circuits": [
                name for name, s in breakers["operations"].items() if s["state"] == "Open"
            ],
        }
