"""API registry: module operations invoked through middleware, circuit breaker, timeout and retry."""

import asyncio
import functools
import inspect
import logging
import re
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

from pydantic import BaseModel

from aither_core.comms.circuit_breaker import CircuitBreaker
from aither_core.comms.middleware import (
    InvocationContext,
    Middleware,
    MiddlewarePipeline,
    chain,
)
from aither_core.comms.models import new_id
from aither_core.comms.schema import (
    ParameterSchema,
    build_parameter_model,
    parse_schema,
    validate_parameters,
)
from aither_core.errors import (
    ApiAlreadyRegisteredError,
    ApiNotFoundError,
    ApiTimeoutError,
    AuthenticationError,
    CircuitOpenError,
    ParameterValidationError,
)

logger = logging.getLogger(__name__)

_NON_RETRYABLE = (
    ParameterValidationError,
    AuthenticationError,
    ApiNotFoundError,
    CircuitOpenError,
)
_RETRYABLE = (ApiTimeoutError, ConnectionError)
_RETRYABLE_MESSAGE = re.compile(r"timeout|timed out|connection|network|unavailable|busy", re.I)
# Errors caused by the caller, not by the operation; they never trip the breaker
_CALLER_ERRORS = (ParameterValidationError, AuthenticationError)


def is_retryable(error: BaseException) -> bool:
    if isinstance(error, _NON_RETRYABLE):
        return False
    if isinstance(error, _RETRYABLE):
        return True
    return bool(_RETRYABLE_MESSAGE.search(str(error)))


def backoff_delay(attempt: int, base: float = 1.0, cap: float = 30.0) -> float:
    """Delay in seconds before retrying after failed attempt number ``attempt`` (1-based)."""
    return min(base * 2 ** (attempt - 1), cap)


@dataclass
class ApiRegistration:
    module: str
    operation: str
    handler: Callable[..., Any]
    parameters: ParameterSchema = field(default_factory=dict)
    parameter_model: type[BaseModel] | None = field(default=None, repr=False)
    middleware: list[Middleware] = field(default_factory=list)
    description: str = ""
    registered_at: float = field(default_factory=time.time)
    call_count: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    average_execution_time: float = 0.0  # ms, successful calls only
    last_called: float | None = None

    @property
    def full_name(self) -> str:
        return f"{self.module}.{self.operation}"


@dataclass
class ApiCallRecord:
    """Outcome of one invoke(), including its retries."""

    api: str
    call_id: str = field(default_factory=new_id)
    caller_module: str = ""
    success: bool = False
    attempts: int = 0
    delays: list[float] = field(default_factory=list)
    elapsed_ms: float = 0.0
    error: str = ""
    timestamp: float = field(default_factory=time.time)


class ApiRegistry:
    """Registered module operations keyed by 'Module.Operation'."""

    def __init__(
        self,
        pipeline: MiddlewarePipeline | None = None,
        breaker: CircuitBreaker | None = None,
        default_timeout: float = 30.0,
        call_history_size: int = 1000,
        retry_base_delay: float = 1.0,
        retry_max_delay: float = 30.0,
    ) -> None:
        self.pipeline = pipeline or MiddlewarePipeline()
        self.breaker = breaker or CircuitBreaker()
        self.default_timeout = default_timeout
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self._apis: dict[str, ApiRegistration] = {}
        self._history: deque[ApiCallRecord] = deque(maxlen=call_history_size)
        self._lock = threading.RLock()

    # -- registration ---------------------------------------------------------

    def register(
        self,
        module: str,
        operation: str,
        handler: Callable[..., Any],
        parameters: Mapping[str, Any] | None = None,
        middleware: list[Middleware] | None = None,
        description: str = "",
        update: bool = False,
    ) -> ApiRegistration:
        """Register an operation. Re-registering requires update=True."""
        reg = ApiRegistration(
            module=module,
            operation=operation,
            handler=handler,
            parameters=parse_schema(parameters),
            middleware=list(middleware or []),
            description=description,
        )
        reg.parameter_model = build_parameter_model(reg.full_name, reg.parameters)
        with self._lock:
            existing = self._apis.get(reg.full_name)
            if existing is not None:
                if not update:
                    raise ApiAlreadyRegisteredError(reg.full_name)
                # keep metrics across updates
                reg.call_count = existing.call_count
                reg.successful_calls = existing.successful_calls
                reg.failed_calls = existing.failed_calls
                reg.average_execution_time = existing.average_execution_time
                reg.last_called = existing.last_called
            self._apis[reg.full_name] = reg
        logger.info("API %s %s", reg.full_name, "updated" if existing else "registered")
        return reg

    def unregister(self, module: str, operation: str) -> bool:
        with self._lock:
            removed = self._apis.pop(f"{module}.{operation}", None) is not None
        if removed:
            logger.info("API %s.%s unregistered", module, operation)
        return removed

    def unregister_module(self, module: str) -> int:
        with self._lock:
            names = [k for k, r in self._apis.items() if r.module == module]
            for k in names:
                del self._apis[k]
        return len(names)

    def get(self, module: str, operation: str) -> ApiRegistration:
        full_name = f"{module}.{operation}"
        with self._lock:
            reg = self._apis.get(full_name)
        if reg is None:
            raise ApiNotFoundError(full_name)
        return reg

    def query(self, module: str | None = None) -> list[ApiRegistration]:
        with self._lock:
            regs = list(self._apis.values())
        if module is not None:
            regs = [r for r in regs if r.module == module]
        return regs

    def __len__(self) -> int:
        with self._lock:
            return len(self._apis)

    # -- history and metrics ------------------------------------------------

    def call_history(self, api: str | None = None, limit: int | None = None) -> list[ApiCallRecord]:
        with self._lock:
            records = list(self._history)
        if api is not None:
            records = [r for r in records if r.api == api]
        if limit is not None:
            records = records[-limit:] if limit > 0 else []
        return records

    def metrics(self) -> dict[str, Any]:
        regs = self.query()
        total = sum(r.call_count for r in regs)
        successful = sum(r.successful_calls for r in regs)
        weighted = sum(r.average_execution_time * r.successful_calls for r in regs)
        return {
            "registered_apis": len(regs),
            "total_calls": total,
            "successful_calls": successful,
            "failed_calls": sum(r.failed_calls for r in regs),
            "average_execution_time_ms": round(weighted / successful, 3) if successful else 0.0,
        }

    # -- invocation -----------------------------------------------------------

    async def invoke(
        self,
        module: str,
        operation: str,
        parameters: Mapping[str, Any] | None = None,
        *,
        run_async: bool = False,
        timeout: float | None = None,
        skip_middleware: bool = False,
        auth_token: str | None = None,
        enable_circuit_breaker: bool = True,
        retry_attempts: int = 0,
        caller_module: str = "",
        metadata: Mapping[str, Any] | None = None,
    ) -> Any:
        """Invoke Module.Operation and return the handler's result.

        With run_async the call is scheduled and an asyncio.Task is returned at once.
        """
        coro = self._invoke(
            module,
            operation,
            parameters,
            timeout=self.default_timeout if timeout is None else timeout,
            skip_middleware=skip_middleware,
            auth_token=auth_token,
            enable_circuit_breaker=enable_circuit_breaker,
            retry_attempts=max(0, retry_attempts),
            caller_module=caller_module,
            metadata=dict(metadata or {}),
        )
        if run_async:
            return asyncio.create_task(coro)
        return await coro

    async def _invoke(
        self,
        module: str,
        operation: str,
        parameters: Mapping[str, Any] | None,
        *,
        timeout: float,
        skip_middleware: bool,
        auth_token: str | None,
        enable_circuit_breaker: bool,
        retry_attempts: int,
        caller_module: str,
        metadata: dict[str, Any],
    ) -> Any:
        full_name = f"{module}.{operation}"
        record = ApiCallRecord(api=full_name, caller_module=caller_module)
        started = time.perf_counter()
        try:
            reg = self.get(module, operation)
            params = validate_parameters(
                full_name, reg.parameters, parameters, reg.parameter_model
            )
        except (ApiNotFoundError, ParameterValidationError) as e:
            self._finish(record, started, e)
            raise

        with self._lock:
            reg.call_count += 1
            reg.last_called = time.time()

        middlewares = self.pipeline.handlers(include_optional=not skip_middleware) + reg.middleware
        run = chain(middlewares, functools.partial(self._call_handler, reg))
        headers = {"Authorization": f"Bearer {auth_token}"} if auth_token else {}

        last_error: Exception | None = None
        for attempt in range(1, retry_attempts + 2):
            record.attempts = attempt
            context = InvocationContext(
                module=module,
                operation=operation,
                parameters=dict(params),
                headers=dict(headers),
                metadata=dict(metadata),
                call_id=record.call_id,
                caller_module=caller_module,
            )
            try:
                result = await self._attempt(full_name, run, context, timeout, enable_circuit_breaker)
            except CircuitOpenError as e:
                last_error = e
                break
            except Exception as e:
                last_error = e
                if attempt <= retry_attempts and is_retryable(e):
                    delay = backoff_delay(attempt, self.retry_base_delay, self.retry_max_delay)
                    record.delays.append(delay)
                    logger.warning(
                        "API %s attempt %d/%d failed, retrying in %.1fs: %s",
                        full_name,
                        attempt,
                        retry_attempts + 1,
                        delay,
                        e,
                    )
                    await asyncio.sleep(delay)
                    continue
                break
            else:
                elapsed_ms = (time.perf_counter() - context.started_at) * 1000
                with self._lock:
                    reg.successful_calls += 1
                    n = reg.successful_calls
                    reg.average_execution_time = (
                        reg.average_execution_time * (n - 1) + elapsed_ms
                    ) / n
                self._finish(record, started, None)
                return result

        with self._lock:
            reg.failed_calls += 1
        assert last_error is not None
        self._finish(record, started, last_error)
        logger.error("API %s failed after %d attempt(s): %s", full_name, record.attempts, last_error)
        raise last_error

    async def _attempt(
        self,
        full_name: str,
        run: Callable[[InvocationContext], Any],
        context: InvocationContext,
        timeout: float,
        enable_circuit_breaker: bool,
    ) -> Any:
        if enable_circuit_breaker:
            self.breaker.before_call(full_name)
        try:
            try:
                result = await asyncio.wait_for(run(context), timeout=timeout)
            except asyncio.TimeoutError:
                raise ApiTimeoutError(full_name, timeout) from None
        except _CALLER_ERRORS:
            if enable_circuit_breaker:
                self.breaker.release(full_name)
            raise
        except Exception as e:
            if enable_circuit_breaker:
                self.breaker.record_failure(full_name, e)
            raise
        except asyncio.CancelledError:
            if enable_circuit_breaker:
                self.breaker.release(full_name)
            raise
        if enable_circuit_breaker:
            self.breaker.record_success(full_name)
        return result

    @staticmethod
    async def _call_handler(reg: ApiRegistration, context: InvocationContext) -> Any:
        # sync handlers run in a worker thread; on timeout the thread is abandoned
        if inspect.iscoroutinefunction(reg.handler):
            return await reg.handler(**context.parameters)
        result = await asyncio.to_thread(functools.partial(reg.handler, **context.parameters))
        if inspect.isawaitable(result):
            result = await result
        return result

    def _finish(self, record: ApiCallRecord, started: float, error: BaseException | None) -> None:
        record.elapsed_ms = round((time.perf_counter() - started) * 1000, 3)
        record.success = error is None
        if error is not None:
            record.error = f"{type(error).__name__}: {error}"
        with self._lock:
            self._history.append(record)
