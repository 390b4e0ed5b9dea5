"""ModuleContext: the hub API handed to a module. Modules never reach the hub any other way."""

import logging
from typing import TYPE_CHECKING, Any, Callable, Mapping

from aither_core.comms.models import Event, Message, Priority

if TYPE_CHECKING:
    from aither_core.comms.hub import CommunicationHub


class ModuleContext:
    """Everything a module can do at initialize time and afterwards."""

    def __init__(
        self,
        module_name: str,
        config: dict[str, Any],
        logger: logging.Logger,
        hub: "CommunicationHub | None",
    ) -> None:
        self.module_name = module_name
        self.config = config
        self.logger = logger
        self._hub = hub

    @property
    def hub(self) -> "CommunicationHub":
        if self._hub is None:
            raise RuntimeError(f"Module {self.module_name} was loaded without a communication hub")
        return self._hub

    def get_config(self, key: str, default: Any = None) -> Any:
        """Read a value from the config: block in manifest.yaml."""
        return self.config.get(key, default)

    def publish(
        self,
        channel: str,
        message_type: str,
        data: Any = None,
        priority: Priority = Priority.NORMAL,
        ttl_seconds: float | None = None,
    ) -> str:
        return self.hub.publish(channel, message_type, data, self.module_name, priority, ttl_seconds)

    def send_event(self, name: str, data: Any = None, **kwargs: Any) -> Event:
        return self.hub.send_event(name, data, source_module=self.module_name, **kwargs)

    def subscribe(
        self,
        channel: str,
        message_type_pattern: str,
        handler: Callable[[Message], Any],
        filter: Callable[[Message], bool] | None = None,
        run_async: bool = False,
    ) -> str:
        """Subscription is owned by this module (removed by unsubscribe(module=...))."""
        return self.hub.subscribe(
            channel, message_type_pattern, handler, self.module_name, filter, run_async
        )

    def register_api(
        self,
        operation: str,
        handler: Callable[..., Any],
        parameters: Mapping[str, Any] | None = None,
        description: str = "",
        update: bool = False,
    ) -> None:
        """Register <ModuleName>.<operation>."""
        self.hub.register_api(
            self.module_name, operation, handler, parameters, description=description, update=update
        )

    async def invoke(
        self,
        module: str,
        operation: str,
        parameters: Mapping[str, Any] | None = None,
        **options: Any,
    ) -> Any:
        options.setdefault("caller_module", self.module_name)
        return await self.hub.invoke_api(module, operation, parameters, **options)
