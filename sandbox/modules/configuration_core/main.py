"""ConfigurationCore: key/value configuration shared between modules."""

from typing import Any


class ConfigurationCore:
    def __init__(self) -> None:
        self._values: dict[str, Any] = {}
        self._context: Any = None
        self._channel = "Config"

    async def initialize(self, context: Any) -> None:
        self._context = context
        self._channel = context.get_config("channel", "Config")
        self._values = dict(context.get_config("values", {}) or {})
        context.hub.create_channel(self._channel, "Configuration changes")
        context.register_api(
            "GetConfiguration",
            self.get_configuration,
            parameters={
                "key": {"type": "string", "required": True},
                "default": {"type": "any"},
            },
            description="Read a configuration value",
        )
        context.register_api(
            "SetConfiguration",
            self.set_configuration,
            parameters={
                "key": {"type": "string", "required": True},
                "value": {"type": "any", "required": True},
            },
            description="Write a configuration value and publish Changed on the Config channel",
        )

    def get_configuration(self, key: str, default: Any = None) -> Any:
        return self._values.get(key, default)

    def set_configuration(self, key: str, value: Any) -> Any:
        """Returns the previous value."""
        previous = self._values.get(key)
        self._values[key] = value
        self._context.publish(
            self._channel,
            "Changed",
            {"module": self._context.module_name, "key": key, "value": value, "previous": previous},
        )
        return previous
