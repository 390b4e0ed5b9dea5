"""Error taxonomy for the communication hub and the module loader."""


class CommunicationError(Exception):
    """Base class for every error raised by the communication core."""


class ChannelNotFoundError(CommunicationError):
    def __init__(self, channel: str) -> None:
        super().__init__(f"Channel not found: {channel}")
        self.channel = channel


class QueueFullError(CommunicationError):
    def __init__(self, max_size: int) -> None:
        super().__init__(f"Message queue is full ({max_size} messages)")
        self.max_size = max_size


class SubscriptionNotFoundError(CommunicationError):
    def __init__(self, subscription_id: str) -> None:
        super().__init__(f"Subscription not found: {subscription_id}")
        self.subscription_id = subscription_id


class ApiNotFoundError(CommunicationError):
    def __init__(self, full_name: str) -> None:
        super().__init__(f"API not found: {full_name}")
        self.full_name = full_name


class ApiAlreadyRegisteredError(CommunicationError):
    def __init__(self, full_name: str) -> None:
        super().__init__(
            f"API already registered: {full_name} (pass update=True to replace it)"
        )
        self.full_name = full_name


class ParameterValidationError(CommunicationError):
    """Raised with every violation found, not only the first one."""

    def __init__(self, full_name: str, violations: list[str]) -> None:
        super().__init__(
            f"Parameter validation failed for {full_name}: " + "; ".join(violations)
        )
        self.full_name = full_name
        self.violations = list(violations)


class AuthenticationError(CommunicationError):
    pass


class ApiTimeoutError(CommunicationError, TimeoutError):
    def __init__(self, full_name: str, timeout: float) -> None:
        super().__init__(f"API call {full_name} timed out after {timeout}s")
        self.full_name = full_name
        self.timeout = timeout


class CircuitOpenError(CommunicationError):
    def __init__(self, operation: str, retry_in: float | None = None) -> None:
        msg = f"Circuit breaker is open for {operation}"
        if retry_in is not None:
            msg += f" (retry in {retry_in:.1f}s)"
        super().__init__(msg)
        self.operation = operation
        self.retry_in = retry_in


class ModuleLoadError(Exception):
    def __init__(self, module: str, reason: str) -> None:
        super().__init__(f"Failed to load module {module}: {reason}")
        self.module = module
        self.reason = reason


class CircularDependencyError(Exception):
    """Reported by the loader as a warning; never escapes load_modules()."""

    def __init__(self, cycle: list[str]) -> None:
        super().__init__("Circular dependency: " + " -> ".join(cycle + cycle[:1]))
        self.cycle = list(cycle)
