"""ModuleLoader: dependency-ordered module loading, parallel within a depth level.

Run: bootstrap module first -> read manifests -> resolve depth levels ->
load level by level -> ImportResult. Level N+1 starts only after every load
of level N has reported. A failing parallel level is retried sequentially; a
failing parallel strategy is retried once as a plain sequential run.
"""

import asyncio
import importlib.util
import logging
import os
import re
import sys
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterable

from aither_core.errors import ModuleLoadError
from aither_core.logging_config import module_logger
from aither_core.modules.context import ModuleContext
from aither_core.modules.contract import AitherModule, ShutdownAware
from aither_core.modules.graph import build_dependency_graph, resolve_depth_levels
from aither_core.modules.manifest import (
    MANIFEST_FILE,
    ModuleDescriptor,
    ModuleManifest,
    load_manifest,
)
from aither_core.modules.registry import LoadedModule, LoadedModules

if TYPE_CHECKING:
    from aither_core.comms.hub import CommunicationHub

logger = logging.getLogger(__name__)

DEFAULT_BOOTSTRAP_MODULE = "Logging"


class LoaderState(Enum):
    NOT_STARTED = "NotStarted"
    RESOLVING_DEPENDENCIES = "ResolvingDependencies"
    LOADING_LEVEL = "LoadingLevel"
    COMPLETE = "Complete"
    FAILED = "Failed"


class LoadStatus(str, Enum):
    SUCCESS = "Success"
    FAILED = "Failed"
    SKIPPED = "Skipped"


@dataclass
class ModuleLoadDetail:
    name: str
    status: LoadStatus
    message: str = ""
    load_time: float = 0.0
    depth: int | None = None
    required: bool = False


@dataclass
class ImportResult:
    details: list[ModuleLoadDetail] = field(default_factory=list)
    load_order: list[str] = field(default_factory=list)
    parallel_groups: list[list[str]] = field(default_factory=list)
    circular_dependencies: list[list[str]] = field(default_factory=list)
    duration: float = 0.0
    legacy_mode: bool = False

    def _count(self, status: LoadStatus) -> int:
        return sum(1 for d in self.details if d.status is status)

    @property
    def imported_count(self) -> int:
        return self._count(LoadStatus.SUCCESS)

    @property
    def failed_count(self) -> int:
        return self._count(LoadStatus.FAILED)

    @property
    def skipped_count(self) -> int:
        return self._count(LoadStatus.SKIPPED)

    @property
    def required_failures(self) -> list[str]:
        return [d.name for d in self.details if d.required and d.status is not LoadStatus.SUCCESS]

    @property
    def success(self) -> bool:
        """True when every required module is loaded (optional failures are tolerated)."""
        return not self.required_failures

    def detail(self, name: str) -> ModuleLoadDetail | None:
        return next((d for d in self.details if d.name == name), None)

    def summary(self) -> dict[str, Any]:
        return {
            "imported_count": self.imported_count,
            "failed_count": self.failed_count,
            "skipped_count": self.skipped_count,
            "load_order": list(self.load_order),
            "parallel_groups": [list(g) for g in self.parallel_groups],
            "circular_dependencies": [list(c) for c in self.circular_dependencies],
            "duration": round(self.duration, 3),
            "legacy_mode": self.legacy_mode,
            "success": self.success,
        }


@dataclass
class _Planned:
    descriptor: ModuleDescriptor
    manifest: ModuleManifest


class ModuleLoader:
    """Loads modules described by ModuleDescriptors, in dependency order."""

    def __init__(
        self,
        modules_root: Path,
        hub: "CommunicationHub | None" = None,
        max_parallel: int | None = None,
        bootstrap_module: str = DEFAULT_BOOTSTRAP_MODULE,
        loaded: LoadedModules | None = None,
    ) -> None:
        self._modules_root = modules_root
        self._hub = hub
        self.max_parallel = max(1, max_parallel or os.cpu_count() or 1)
        self.bootstrap_module = bootstrap_module
        self.loaded = loaded if loaded is not None else LoadedModules()
        self.state = LoaderState.NOT_STARTED
        self.current_level: int | None = None

    # -- public ---------------------------------------------------------------

    async def load_modules(
        self,
        descriptors: Iterable[ModuleDescriptor],
        force: bool = False,
        use_legacy_mode: bool = False,
    ) -> ImportResult:
        """Load modules level by level. Falls back to legacy sequential loading once."""
        descriptors = list(descriptors)
        if not use_legacy_mode:
            try:
                return await self._load(descriptors, force, legacy=False)
            except Exception as e:
                logger.warning("Parallel module loading failed, retrying in legacy mode: %s", e)
        try:
            return await self._load(descriptors, force, legacy=True)
        except Exception:
            self.state = LoaderState.FAILED
            logger.exception("Legacy module loading failed")
            raise

    async def shutdown(self) -> None:
        """Shut down loaded modules in reverse load order."""
        for module in reversed(self.loaded.items()):
            if self._hub is not None:
                self._hub.unsubscribe(module=module.name)
                self._hub.apis.unregister_module(module.name)
            if isinstance(module.instance, ShutdownAware):
                try:
                    await module.instance.shutdown()
                except Exception as e:
                    logger.exception("shutdown failed for %s: %s", module.name, e)
            self.loaded.remove(module.name)

    # -- run ------------------------------------------------------------------

    async def _load(
        self, descriptors: list[ModuleDescriptor], force: bool, legacy: bool
    ) -> ImportResult:
        started = time.perf_counter()
        result = ImportResult(legacy_mode=legacy)
        self.state = LoaderState.RESOLVING_DEPENDENCIES
        self.current_level = None

        by_name: dict[str, ModuleDescriptor] = {}
        for d in descriptors:
            if d.name in by_name:
                logger.warning("Duplicate module descriptor %s, using the last one", d.name)
            by_name[d.name] = d

        planned: dict[str, _Planned] = {}
        for name, descriptor in by_name.items():
            try:
                planned[name] = _Planned(descriptor, self._read_manifest(descriptor))
            except Exception as e:
                self._record(result, self._unloadable(descriptor, str(e)))

        # Everything logs through the bootstrap module; it goes first, outside the graph.
        boot = planned.pop(self.bootstrap_module, None)
        if boot is not None:
            self._record(result, await self._load_module(boot, force, depth=None))

        dependencies = {
            name: [d for d in p.manifest.depends_on if d in planned or d not in self.loaded]
            for name, p in planned.items()
        }
        graph = build_dependency_graph(dependencies, exclude=[self.bootstrap_module])
        resolution = resolve_depth_levels(graph)

        for cycle in resolution.cycles:
            logger.warning("%s; skipping %s", cycle, ", ".join(cycle.cycle))
            result.circular_dependencies.append(cycle.cycle)
            for name in cycle.cycle:
                self._record(
                    result, self._unloadable(planned[name].descriptor, str(cycle))
                )
        for name, deps in resolution.blocked.items():
            self._record(
                result,
                self._unloadable(
                    planned[name].descriptor,
                    "depends on unresolved module(s): " + ", ".join(deps),
                ),
            )
        for name, deps in resolution.missing.items():
            self._record(
                result,
                self._unloadable(
                    planned[name].descriptor, "missing dependency: " + ", ".join(deps)
                ),
            )

        levels = [resolution.order] if legacy else resolution.levels
        for depth, names in enumerate(levels):
            self.state = LoaderState.LOADING_LEVEL
            self.current_level = None if legacy else depth
            items = [planned[n] for n in names]
            if legacy or len(items) == 1:
                details = await self._load_sequential(items, force, resolution.depths)
            else:
                result.parallel_groups.append(list(names))
                details = await self._load_level(items, force, depth)
            for detail in details:
                self._record(result, detail)

        result.duration = time.perf_counter() - started
        self.state = LoaderState.COMPLETE
        self.current_level = None
        logger.info(
            "Module import complete: %d imported, %d failed, %d skipped in %.2fs%s",
            result.imported_count,
            result.failed_count,
            result.skipped_count,
            result.duration,
            " (legacy mode)" if legacy else "",
        )
        return result

    async def _load_level(
        self, items: list[_Planned], force: bool, depth: int
    ) -> list[ModuleLoadDetail]:
        """Parallel load of one depth level; sequential for whatever the parallel run missed."""
        done: dict[str, ModuleLoadDetail] = {}
        try:
            await self._load_parallel(items, force, depth, done)
        except Exception as e:
            logger.warning(
                "Parallel load of depth %d failed, loading sequentially: %s", depth, e
            )
            rest = [p for p in items if p.descriptor.name not in done]
            depths = {p.descriptor.name: depth for p in rest}
            for detail in await self._load_sequential(rest, force, depths):
                done[detail.name] = detail
        return list(done.values())

    async def _load_parallel(
        self,
        items: list[_Planned],
        force: bool,
        depth: int,
        done: dict[str, ModuleLoadDetail],
    ) -> None:
        semaphore = asyncio.Semaphore(self.max_parallel)

        async def worker(p: _Planned) -> None:
            async with semaphore:
                done[p.descriptor.name] = await self._load_module(p, force, depth)

        # all workers settle before the first error is raised
        outcomes = await asyncio.gather(*(worker(p) for p in items), return_exceptions=True)
        errors = [o for o in outcomes if isinstance(o, Exception)]
        if errors:
            raise errors[0]

    async def _load_sequential(
        self, items: list[_Planned], force: bool, depths: dict[str, int]
    ) -> list[ModuleLoadDetail]:
        details = []
        for p in items:
            details.append(await self._load_module(p, force, depths.get(p.descriptor.name)))
        return details

    # -- one module -------------------------------------------------------------

    async def _load_module(self, p: _Planned, force: bool, depth: int | None) -> ModuleLoadDetail:
        name = p.descriptor.name
        required = p.descriptor.required or p.manifest.required
        if name in self.loaded and not force:
            return ModuleLoadDetail(
                name, LoadStatus.SKIPPED, "already loaded", depth=depth, required=False
            )
        not_loaded = [
            d
            for d in p.manifest.depends_on
            if d != self.bootstrap_module and d not in self.loaded
        ]
        if not_loaded:
            return self._unloadable(
                p.descriptor, "dependency not loaded: " + ", ".join(not_loaded), depth
            )

        started = time.perf_counter()
        try:
            instance = await asyncio.to_thread(self._import_entrypoint, p)
            if not isinstance(instance, AitherModule):
                raise ModuleLoadError(name, "entrypoint class has no initialize(context)")
            context = ModuleContext(
                module_name=name,
                config=dict(p.manifest.config),
                logger=module_logger(name),
                hub=self._hub,
            )
            await instance.initialize(context)
        except Exception as e:
            error = e if isinstance(e, ModuleLoadError) else ModuleLoadError(name, str(e))
            log = logger.error if required else logger.warning
            log("%s", error, exc_info=not isinstance(e, ModuleLoadError))
            return ModuleLoadDetail(
                name,
                LoadStatus.FAILED,
                str(error),
                load_time=time.perf_counter() - started,
                depth=depth,
                required=required,
            )

        self.loaded.add(
            LoadedModule(
                name=name,
                path=str(self._module_dir(p.descriptor)),
                description=p.descriptor.description or p.manifest.description,
                instance=instance,
            )
        )
        load_time = time.perf_counter() - started
        logger.info("Module %s loaded in %.3fs", name, load_time)
        return ModuleLoadDetail(
            name, LoadStatus.SUCCESS, "Imported", load_time=load_time, depth=depth, required=required
        )

    def _unloadable(
        self, descriptor: ModuleDescriptor, reason: str, depth: int | None = None
    ) -> ModuleLoadDetail:
        """A module that cannot be attempted: Failed when required, else Skipped."""
        if descriptor.required:
            logger.error("Required module %s not loaded: %s", descriptor.name, reason)
            status = LoadStatus.FAILED
        else:
            logger.warning("Module %s skipped: %s", descriptor.name, reason)
            status = LoadStatus.SKIPPED
        return ModuleLoadDetail(
            descriptor.name, status, reason, depth=depth, required=descriptor.required
        )

    @staticmethod
    def _record(result: ImportResult, detail: ModuleLoadDetail) -> None:
        result.details.append(detail)
        if detail.status is LoadStatus.SUCCESS:
            result.load_order.append(detail.name)

    def _module_dir(self, descriptor: ModuleDescriptor) -> Path:
        path = Path(descriptor.path)
        return path if path.is_absolute() else self._modules_root / path

    def _read_manifest(self, descriptor: ModuleDescriptor) -> ModuleManifest:
        manifest_path = self._module_dir(descriptor) / MANIFEST_FILE
        if not manifest_path.exists():
            raise ModuleLoadError(descriptor.name, f"{manifest_path} not found")
        manifest = load_manifest(manifest_path)
        if manifest.name != descriptor.name:
            logger.warning(
                "Manifest name %s differs from descriptor name %s", manifest.name, descriptor.name
            )
        return manifest

    def _import_entrypoint(self, p: _Planned) -> Any:
        """Import the entrypoint file and instantiate its class. Runs in a worker thread."""
        module_dir = self._module_dir(p.descriptor)
        file_name, class_name = p.manifest.entrypoint.split(":", 1)
        py_path = module_dir / f"{file_name}.py"
        if not py_path.exists():
            raise FileNotFoundError(f"{py_path} not found")
        safe = re.sub(r"\W", "_", p.descriptor.name)
        spec = importlib.util.spec_from_file_location(f"aither_module_{safe}_{file_name}", py_path)
        if spec is None or spec.loader is None:
            raise ImportError(f"Cannot load {py_path}")
        mod = importlib.util.module_from_spec(spec)
        sys.modules[spec.name] = mod
        spec.loader.exec_module(mod)
        cls = getattr(mod, class_name)
        return cls()
