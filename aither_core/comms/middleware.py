"""Middleware pipeline for API invocation.

A middleware is ``async (context, next) -> result``. It continues the chain by
awaiting ``next(context)`` or short-circuits by raising or returning early.
"""

import itertools
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

DEFAULT_MIDDLEWARE_PRIORITY = 100
SECURITY_MIDDLEWARE_PRIORITY = 0
LOGGING_MIDDLEWARE_PRIORITY = 90


@dataclass
class InvocationContext:
    """Per-call state flowing through the middleware chain to the handler."""

    module: str
    operation: str
    parameters: dict[str, Any] = field(default_factory=dict)
    headers: dict[str, str] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    call_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    caller_module: str = ""
    authentication: Any = None
    user: str = ""
    started_at: float = field(default_factory=time.perf_counter)

    @property
    def full_name(self) -> str:
        return f"{self.module}.{self.operation}"


Next = Callable[[InvocationContext], Awaitable[Any]]
Middleware = Callable[[InvocationContext, Next], Awaitable[Any]]


def chain(middlewares: list[Middleware], terminal: Next) -> Next:
    """Compose middlewares around terminal; the first middleware is outermost."""
    call = terminal
    for mw in reversed(middlewares):
        call = _bind(mw, call)
    return call


def _bind(mw: Middleware, nxt: Next) -> Next:
    async def invoke(context: InvocationContext) -> Any:
        return await mw(context, nxt)

    return invoke


@dataclass(frozen=True)
class MiddlewareEntry:
    name: str
    priority: int
    handler: Middleware
    order: int
    # mandatory middleware (security) also runs when a call skips middleware
    mandatory: bool = False


class MiddlewarePipeline:
    """Global middleware, ordered by priority (lower runs earlier), then insertion."""

    def __init__(self) -> None:
        self._entries: dict[str, MiddlewareEntry] = {}
        self._counter = itertools.count()
        self._lock = threading.Lock()

    def add(
        self,
        name: str,
        handler: Middleware,
        priority: int = DEFAULT_MIDDLEWARE_PRIORITY,
        mandatory: bool = False,
    ) -> None:
        """Insert or replace middleware by name."""
        with self._lock:
            self._entries[name] = MiddlewareEntry(
                name, priority, handler, next(self._counter), mandatory
            )
        logger.debug("Middleware %s added (priority %d)", name, priority)

    def remove(self, name: str) -> bool:
        with self._lock:
            removed = self._entries.pop(name, None) is not None
        if removed:
            logger.debug("Middleware %s removed", name)
        return removed

    def entries(self) -> list[MiddlewareEntry]:
        with self._lock:
            return sorted(self._entries.values(), key=lambda e: (e.priority, e.order))

    def handlers(self, include_optional: bool = True) -> list[Middleware]:
        return [e.handler for e in self.entries() if include_optional or e.mandatory]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


async def logging_middleware(context: InvocationContext, next: Next) -> Any:
    """Log API calls with elapsed time."""
    logger.debug("API call %s [%s] started", context.full_name, context.call_id)
    started = time.perf_counter()
    try:
        result = await next(context)
    except Exception as e:
        logger.warning(
            "API call %s [%s] failed after %.1f ms: %s",
            context.full_name,
            context.call_id,
            (time.perf_counter() - started) * 1000,
            e,
        )
        raise
    logger.info(
        "API call %s [%s] completed in %.1f ms",
        context.full_name,
        context.call_id,
        (time.perf_counter() - started) * 1000,
    )
    return result
