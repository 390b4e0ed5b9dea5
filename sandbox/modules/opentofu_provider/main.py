"""OpenTofuProvider: builds (but does not execute) OpenTofu command plans."""

from typing import Any

_COMMANDS = ["init", "plan", "apply", "destroy"]


class OpenTofuProvider:
    def __init__(self) -> None:
        self._context: Any = None
        self._binary = "tofu"

    async def initialize(self, context: Any) -> None:
        self._context = context
        self._binary = context.get_config("binary", "tofu")
        context.register_api(
            "BuildCommand",
            self.build_command,
            parameters={
                "command": {"type": "string", "required": True, "allowed_values": _COMMANDS},
                "workspace": {"type": "string"},
                "auto_approve": {"type": "bool", "default": False},
            },
            description="Return the argv for an OpenTofu command in a workspace",
        )

    async def build_command(
        self, command: str, workspace: str | None = None, auto_approve: bool = False
    ) -> list[str]:
        if workspace is None:
            workspace = await self._context.invoke(
                "ConfigurationCore",
                "GetConfiguration",
                {"key": "opentofu.workspace", "default": "default"},
            )
        argv = [self._binary, f"-chdir=workspaces/{workspace}", command]
        if auto_approve and command in ("apply", "destroy"):
            argv.append("-auto-approve")
        return argv

    async def shutdown(self) -> None:
        self._context.logger.debug("OpenTofuProvider stopped")
