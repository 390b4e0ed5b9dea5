"""Module system: descriptors, manifests, dependency graph, context, loader."""

from aither_core.modules.context import ModuleContext
from aither_core.modules.contract import AitherModule, ShutdownAware
from aither_core.modules.graph import (
    DependencyResolution,
    build_dependency_graph,
    resolve_depth_levels,
)
from aither_core.modules.loader import (
    ImportResult,
    LoaderState,
    LoadStatus,
    ModuleLoadDetail,
    ModuleLoader,
)
from aither_core.modules.manifest import (
    ModuleDescriptor,
    ModuleManifest,
    discover_modules,
    load_manifest,
)
from aither_core.modules.registry import LoadedModule, LoadedModules

__all__ = [
    "AitherModule",
    "DependencyResolution",
    "ImportResult",
    "LoadStatus",
    "LoadedModule",
    "LoadedModules",
    "LoaderState",
    "ModuleContext",
    "ModuleDescriptor",
    "ModuleLoadDetail",
    "ModuleLoader",
    "ModuleManifest",
    "ShutdownAware",
    "build_dependency_graph",
    "discover_modules",
    "load_manifest",
    "resolve_depth_levels",
]
