"""Entry point for the core process: start the hub, load modules, run until shutdown."""

import asyncio
import logging
import signal
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from aither_core.comms import CommunicationHub
from aither_core.logging_config import setup_logging
from aither_core.modules import (
    ImportResult,
    LoadStatus,
    ModuleDescriptor,
    ModuleLoader,
    discover_modules,
)
from aither_core.settings import get_setting, load_settings

_PROJECT_ROOT = Path(__file__).resolve().parent.parent

logger = logging.getLogger(__name__)


def _build_hub(settings: dict[str, Any]) -> CommunicationHub:
    hub = CommunicationHub.from_settings(settings)
    if get_setting(settings, "security.enabled", False):
        hub.enable_security(
            default_token_expiration_minutes=get_setting(
                settings, "security.token_expiration_minutes", 60
            ),
            require_authentication=get_setting(settings, "security.require_authentication", True),
            allowed_modules=get_setting(settings, "security.allowed_modules", []) or None,
        )
    return hub


def _module_descriptors(settings: dict[str, Any], modules_dir: Path) -> list[ModuleDescriptor]:
    """Static list from settings.yaml when present, else discovery of modules_dir."""
    static = get_setting(settings, "loader.modules", []) or []
    if static:
        return [ModuleDescriptor.model_validate(entry) for entry in static]
    return discover_modules(modules_dir)


def _log_summary(result: ImportResult) -> None:
    logger.info("Import summary: %s", result.summary())
    for detail in result.details:
        if detail.status is not LoadStatus.SUCCESS:
            logger.warning("  %s: %s (%s)", detail.name, detail.status.value, detail.message)
    if not result.success:
        logger.error("Required modules not loaded: %s", ", ".join(result.required_failures))


def _install_signal_handlers(shutdown_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, shutdown_event.set)
        except (NotImplementedError, RuntimeError):
            pass  # no loop signal handlers on Windows; KeyboardInterrupt still stops asyncio.run


async def main_async() -> None:
    """Bootstrap: hub -> security -> descriptors -> load modules -> wait for shutdown."""
    settings = load_settings()
    setup_logging(_PROJECT_ROOT, settings)
    hub = _build_hub(settings)
    await hub.start()

    modules_dir = _PROJECT_ROOT / get_setting(settings, "loader.modules_dir", "sandbox/modules")
    loader = ModuleLoader(
        modules_root=modules_dir,
        hub=hub,
        max_parallel=get_setting(settings, "loader.max_parallel"),
        bootstrap_module=get_setting(settings, "loader.bootstrap_module", "Logging"),
    )
    shutdown_event = asyncio.Event()
    _install_signal_handlers(shutdown_event)
    try:
        result = await loader.load_modules(
            _module_descriptors(settings, modules_dir),
            use_legacy_mode=get_setting(settings, "loader.use_legacy_mode", False),
        )
        _log_summary(result)
        logger.info("Hub status: %s", hub.get_status())
        await shutdown_event.wait()
    except asyncio.CancelledError:
        pass
    finally:
        await loader.shutdown()
        await hub.close()


def main() -> None:
    """Synchronous entry for the core process."""
    load_dotenv(_PROJECT_ROOT / ".env")
    try:
        asyncio.run(main_async())
    except KeyboardInterrupt:
        pass


__all__ = ["main"]
