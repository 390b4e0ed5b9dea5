"""LoadedModules: thread-safe record of modules imported in this process."""

import threading
import time
from dataclasses import dataclass, field
from typing import Any


@dataclass
class LoadedModule:
    name: str
    path: str
    description: str = ""
    import_time: float = field(default_factory=time.time)
    instance: Any = None


class LoadedModules:
    """Map of module name -> LoadedModule. Written concurrently by loader workers."""

    def __init__(self) -> None:
        self._modules: dict[str, LoadedModule] = {}
        self._order: list[str] = []
        self._lock = threading.Lock()

    def add(self, module: LoadedModule) -> None:
        with self._lock:
            if module.name in self._modules:
                self._order.remove(module.name)
            self._modules[module.name] = module
            self._order.append(module.name)

    def get(self, name: str) -> LoadedModule | None:
        with self._lock:
            return self._modules.get(name)

    def remove(self, name: str) -> LoadedModule | None:
        with self._lock:
            module = self._modules.pop(name, None)
            if module is not None:
                self._order.remove(name)
            return module

    def names(self) -> list[str]:
        """Names in load order."""
        with self._lock:
            return list(self._order)

    def items(self) -> list[LoadedModule]:
        with self._lock:
            return [self._modules[n] for n in self._order]

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._modules

    def __len__(self) -> int:
        with self._lock:
            return len(self._modules)
