"""Logging module: turns messages on the Logging channel into log records and exposes WriteLog."""

import logging
from typing import Any

_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


class LoggingModule:
    """Bootstrap module. Other modules log through its channel or its WriteLog API."""

    def __init__(self) -> None:
        self._context: Any = None
        self._written = 0

    async def initialize(self, context: Any) -> None:
        self._context = context
        channel = context.get_config("channel", "Logging")
        default_level = context.get_config("default_level", "INFO")
        context.hub.create_channel(channel, "Log records from modules")
        context.subscribe(channel, "Log*", self._on_message)
        context.register_api(
            "WriteLog",
            self.write_log,
            parameters={
                "message": {"type": "string", "required": True},
                "level": {"type": "string", "default": default_level, "allowed_values": _LEVELS},
                "source": {"type": "string", "default": ""},
            },
            description="Write a log record on behalf of a module",
        )
        context.logger.info("Logging module ready on channel %s", channel)

    async def shutdown(self) -> None:
        if self._context:
            self._context.logger.info("Logging module wrote %d records", self._written)

    def write_log(self, message: str, level: str = "INFO", source: str = "") -> int:
        logger = logging.getLogger(f"module.{source}") if source else self._context.logger
        logger.log(getattr(logging, level, logging.INFO), "%s", message)
        self._written += 1
        return self._written

    def _on_message(self, message: Any) -> None:
        data = message.data if isinstance(message.data, dict) else {"message": message.data}
        self.write_log(
            str(data.get("message", "")),
            str(data.get("level", "INFO")).upper(),
            message.source_module,
        )
