"""LabRunner: plans lab runs from ConfigurationCore values and announces them as events."""

from typing import Any


class LabRunner:
    def __init__(self) -> None:
        self._context: Any = None
        self._runs: list[dict[str, Any]] = []
        self.config_changes = 0

    async def initialize(self, context: Any) -> None:
        self._context = context
        context.subscribe("Config", "Changed", self._on_config_changed, filter=_lab_keys)
        context.register_api(
            "StartLab",
            self.start_lab,
            parameters={
                "name": {"type": "string", "required": True},
                "vm_count": {"type": "int", "default": 1},
                "dry_run": {"type": "bool", "default": True},
            },
            description="Plan (and unless dry_run, record) a lab run",
        )

    async def start_lab(self, name: str, vm_count: int = 1, dry_run: bool = True) -> dict[str, Any]:
        max_vms = await self._context.invoke(
            "ConfigurationCore", "GetConfiguration", {"key": "lab.max_vms", "default": 1}
        )
        template = await self._context.invoke(
            "ConfigurationCore", "GetConfiguration", {"key": "lab.default_template"}
        )
        if vm_count > max_vms:
            raise ValueError(f"Lab {name} requests {vm_count} VMs, limit is {max_vms}")
        run = {"name": name, "vm_count": vm_count, "template": template, "dry_run": dry_run}
        if not dry_run:
            self._runs.append(run)
        self._context.send_event("LabStarted", run, command="StartLab")
        return run

    def _on_config_changed(self, message: Any) -> None:
        self.config_changes += 1
        self._context.logger.info("Lab configuration changed: %s", message.data.get("key"))


def _lab_keys(message: Any) -> bool:
    return isinstance(message.data, dict) and str(message.data.get("key", "")).startswith("lab.")
