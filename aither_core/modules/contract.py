"""Module contract. The loader detects the optional shutdown hook via isinstance(mod, Protocol)."""

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from aither_core.modules.context import ModuleContext


@runtime_checkable
class AitherModule(Protocol):
    """Base contract: required for every module entrypoint class."""

    async def initialize(self, context: "ModuleContext") -> None:
        """Called once after import. Register APIs, subscribe to channels."""


@runtime_checkable
class ShutdownAware(Protocol):
    """Module that releases resources when the process shuts down."""

    async def shutdown(self) -> None:
        """Called in reverse load order. Must not raise."""
