"""Tests for ModuleLoader: depth ordering, parallel levels, fallbacks, failures, shutdown."""

import asyncio
import textwrap
from pathlib import Path
from unittest.mock import patch

import pytest
import yaml

from aither_core.comms.hub import CommunicationHub
from aither_core.modules.loader import LoaderState, LoadStatus, ModuleLoader
from aither_core.modules.manifest import ModuleDescriptor

_MODULE_SOURCE = '''
import asyncio


class Mod:
    async def initialize(self, context):
        {body}
        context.send_event("Loaded", {{"name": context.module_name}})

    async def shutdown(self):
        self.context_hub.send_event("Stopped", {{"name": self.name}})
'''


def _module(
    root: Path,
    name: str,
    deps: list[str] | None = None,
    body: str = "pass",
    required: bool = False,
    source: str | None = None,
) -> ModuleDescriptor:
    module_dir = root / name.lower()
    module_dir.mkdir(parents=True)
    manifest = {"name": name, "entrypoint": "main:Mod", "depends_on": deps or [], "required": required}
    (module_dir / "manifest.yaml").write_text(yaml.safe_dump(manifest), encoding="utf-8")
    if source is None:
        body = body + "\nself.context_hub = context.hub\nself.name = context.module_name"
        source = _MODULE_SOURCE.format(body=textwrap.indent(body, " " * 8).strip())
    (module_dir / "main.py").write_text(source, encoding="utf-8")
    return ModuleDescriptor(name=name, path=module_dir.name, required=required)


def _loaded_events(hub: CommunicationHub, event: str = "Loaded") -> list[str]:
    return [e.data["name"] for e in hub.get_event_history(name=event)]


@pytest.fixture
def hub() -> CommunicationHub:
    return CommunicationHub(log_calls=False)


class TestDependencyOrder:
    """Depth ordering, bootstrap module and already-loaded dependencies."""

    @pytest.mark.asyncio
    async def test_diamond_depths_and_order(self, tmp_path: Path, hub: CommunicationHub) -> None:
        descriptors = [
            _module(tmp_path, "D", ["B", "C"]),
            _module(tmp_path, "C", ["A"]),
            _module(tmp_path, "B", ["A"]),
            _module(tmp_path, "A"),
        ]
        loader = ModuleLoader(tmp_path, hub=hub, max_parallel=4)
        result = await loader.load_modules(descriptors)

        assert result.success
        assert result.imported_count == 4
        assert {d.name: d.depth for d in result.details} == {"A": 0, "B": 1, "C": 1, "D": 2}
        assert result.parallel_groups == [["B", "C"]]
        order = result.load_order
        assert order[0] == "A"
        assert order[-1] == "D"
        assert _loaded_events(hub)[-1] == "D"
        assert loader.state is LoaderState.COMPLETE
        assert loader.loaded.names()[-1] == "D"

    @pytest.mark.asyncio
    async def test_bootstrap_module_loads_first(self, tmp_path: Path, hub: CommunicationHub) -> None:
        descriptors = [
            _module(tmp_path, "Config", ["Logging"]),
            _module(tmp_path, "Logging", required=True),
        ]
        result = await ModuleLoader(tmp_path, hub=hub).load_modules(descriptors)
        assert result.load_order == ["Logging", "Config"]
        assert result.detail("Logging").depth is None
        assert result.detail("Config").depth == 0

    @pytest.mark.asyncio
    async def test_dependency_already_loaded_is_satisfied(
        self, tmp_path: Path, hub: CommunicationHub
    ) -> None:
        loader = ModuleLoader(tmp_path, hub=hub)
        await loader.load_modules([_module(tmp_path, "A")])
        result = await loader.load_modules([_module(tmp_path, "B", ["A"])])
        assert result.load_order == ["B"]
        assert loader.loaded.names() == ["A", "B"]


class TestCycles:
    """Modules in dependency cycles are reported, not loaded."""

    @pytest.mark.asyncio
    async def test_cycle_reported_and_others_load(self, tmp_path: Path, hub: CommunicationHub) -> None:
        descriptors = [
            _module(tmp_path, "X", ["Y"]),
            _module(tmp_path, "Y", ["X"]),
            _module(tmp_path, "A"),
            _module(tmp_path, "Z", ["X"]),
        ]
        result = await ModuleLoader(tmp_path, hub=hub).load_modules(descriptors)
        assert result.circular_dependencies == [["X", "Y"]]
        assert result.load_order == ["A"]
        assert result.detail("X").status is LoadStatus.SKIPPED
        assert result.detail("Z").status is LoadStatus.SKIPPED
        assert result.success

    @pytest.mark.asyncio
    async def test_required_module_in_cycle_fails_run(self, tmp_path: Path, hub: CommunicationHub) -> None:
        descriptors = [_module(tmp_path, "X", ["Y"], required=True), _module(tmp_path, "Y", ["X"])]
        result = await ModuleLoader(tmp_path, hub=hub).load_modules(descriptors)
        assert result.detail("X").status is LoadStatus.FAILED
        assert result.required_failures == ["X"]
        assert not result.success


class TestFailures:
    """Per-module failures stay isolated and are reported."""

    @pytest.mark.asyncio
    async def test_failure_isolated_within_level(self, tmp_path: Path, hub: CommunicationHub) -> None:
        descriptors = [
            _module(tmp_path, "Base"),
            _module(tmp_path, "Bad", ["Base"], body="raise RuntimeError('init failed')"),
            _module(tmp_path, "Good", ["Base"]),
            _module(tmp_path, "NeedsBad", ["Bad"]),
        ]
        result = await ModuleLoader(tmp_path, hub=hub).load_modules(descriptors)
        assert result.detail("Bad").status is LoadStatus.FAILED
        assert "init failed" in result.detail("Bad").message
        assert result.detail("Good").status is LoadStatus.SUCCESS
        assert result.detail("NeedsBad").status is LoadStatus.SKIPPED
        assert "Bad" in result.detail("NeedsBad").message
        assert (result.imported_count, result.failed_count, result.skipped_count) == (2, 1, 1)

    @pytest.mark.asyncio
    async def test_missing_manifest(self, tmp_path: Path, hub: CommunicationHub) -> None:
        descriptors = [
            ModuleDescriptor(name="Gone", path="gone", required=True),
            ModuleDescriptor(name="Optional", path="optional"),
        ]
        result = await ModuleLoader(tmp_path, hub=hub).load_modules(descriptors)
        assert result.detail("Gone").status is LoadStatus.FAILED
        assert result.detail("Optional").status is LoadStatus.SKIPPED
        assert not result.success

    @pytest.mark.asyncio
    async def test_entrypoint_without_initialize(self, tmp_path: Path, hub: CommunicationHub) -> None:
        d = _module(tmp_path, "Plain", source="class Mod:\n    pass\n")
        result = await ModuleLoader(tmp_path, hub=hub).load_modules([d])
        assert result.detail("Plain").status is LoadStatus.FAILED
        assert "initialize" in result.detail("Plain").message

    @pytest.mark.asyncio
    async def test_already_loaded_skipped_unless_forced(
        self, tmp_path: Path, hub: CommunicationHub
    ) -> None:
        loader = ModuleLoader(tmp_path, hub=hub)
        d = _module(tmp_path, "A")
        await loader.load_modules([d])
        again = await loader.load_modules([d])
        assert again.detail("A").status is LoadStatus.SKIPPED
        forced = await loader.load_modules([d], force=True)
        assert forced.detail("A").status is LoadStatus.SUCCESS
        assert _loaded_events(hub) == ["A", "A"]


class TestParallelism:
    """Parallel levels, max_parallel and the sequential and legacy fallbacks."""

    @pytest.mark.asyncio
    async def test_max_parallel_bounds_a_level(self, tmp_path: Path, hub: CommunicationHub) -> None:
        descriptors = [_module(tmp_path, n) for n in ("P1", "P2", "P3", "P4")]
        loader = ModuleLoader(tmp_path, hub=hub, max_parallel=2)
        active = 0
        peak = 0
        original = loader._load_module

        async def tracking(p, force, depth):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            try:
                await asyncio.sleep(0.02)
                return await original(p, force, depth)
            finally:
                active -= 1

        with patch.object(loader, "_load_module", side_effect=tracking):
            result = await loader.load_modules(descriptors)
        assert result.imported_count == 4
        assert peak == 2

    @pytest.mark.asyncio
    async def test_level_falls_back_to_sequential(self, tmp_path: Path, hub: CommunicationHub) -> None:
        descriptors = [_module(tmp_path, n) for n in ("P1", "P2", "P3")]
        loader = ModuleLoader(tmp_path, hub=hub)
        with patch.object(loader, "_load_parallel", side_effect=RuntimeError("pool broken")):
            result = await loader.load_modules(descriptors)
        assert result.imported_count == 3
        assert not result.legacy_mode

    @pytest.mark.asyncio
    async def test_level_fallback_keeps_modules_loaded_in_parallel(
        self, tmp_path: Path, hub: CommunicationHub
    ) -> None:
        descriptors = [_module(tmp_path, "P1"), _module(tmp_path, "P2")]
        loader = ModuleLoader(tmp_path, hub=hub, max_parallel=2)
        original = loader._load_module
        calls: list[str] = []

        async def flaky(p, force, depth):
            name = p.descriptor.name
            calls.append(name)
            if name == "P1" and calls.count("P1") == 1:
                raise RuntimeError("worker crashed")
            if name == "P2":
                await asyncio.sleep(0.1)
            return await original(p, force, depth)

        with patch.object(loader, "_load_module", side_effect=flaky):
            result = await loader.load_modules(descriptors)
        assert {d.name: d.status for d in result.details} == {
            "P1": LoadStatus.SUCCESS,
            "P2": LoadStatus.SUCCESS,
        }
        assert result.imported_count == 2
        assert sorted(result.load_order) == ["P1", "P2"]
        assert calls.count("P2") == 1
        assert sorted(_loaded_events(hub)) == ["P1", "P2"]

    @pytest.mark.asyncio
    async def test_run_falls_back_to_legacy_mode(self, tmp_path: Path, hub: CommunicationHub) -> None:
        descriptors = [_module(tmp_path, "A"), _module(tmp_path, "B", ["A"]), _module(tmp_path, "C", ["A"])]
        loader = ModuleLoader(tmp_path, hub=hub)
        original = loader._load

        async def parallel_broken(descs, force, legacy):
            if not legacy:
                raise RuntimeError("strategy unavailable")
            return await original(descs, force, legacy)

        with patch.object(loader, "_load", side_effect=parallel_broken):
            result = await loader.load_modules(descriptors)
        assert result.legacy_mode
        assert result.parallel_groups == []
        assert result.load_order == ["A", "B", "C"]

    @pytest.mark.asyncio
    async def test_legacy_failure_propagates(self, tmp_path: Path, hub: CommunicationHub) -> None:
        loader = ModuleLoader(tmp_path, hub=hub)
        with patch.object(loader, "_load", side_effect=RuntimeError("everything broken")):
            with pytest.raises(RuntimeError):
                await loader.load_modules([])
        assert loader.state is LoaderState.FAILED

    @pytest.mark.asyncio
    async def test_explicit_legacy_mode(self, tmp_path: Path, hub: CommunicationHub) -> None:
        descriptors = [_module(tmp_path, "B", ["A"]), _module(tmp_path, "A"), _module(tmp_path, "C", ["A"])]
        result = await ModuleLoader(tmp_path, hub=hub).load_modules(descriptors, use_legacy_mode=True)
        assert result.legacy_mode
        assert result.parallel_groups == []
        assert result.load_order == ["A", "B", "C"]
        assert result.detail("B").depth == 1


class TestShutdown:
    """Reverse-order shutdown and hub cleanup."""

    @pytest.mark.asyncio
    async def test_reverse_order_and_cleanup(self, tmp_path: Path, hub: CommunicationHub) -> None:
        body = "context.subscribe('Config', '*', lambda m: None)\ncontext.register_api('Ping', lambda: 'pong')"
        descriptors = [_module(tmp_path, "A", body=body), _module(tmp_path, "B", ["A"], body=body)]
        loader = ModuleLoader(tmp_path, hub=hub)
        await loader.load_modules(descriptors)
        assert len(hub.get_subscriptions()) == 2
        assert len(hub.get_apis()) == 2

        await loader.shutdown()
        assert _loaded_events(hub, "Stopped") == ["B", "A"]
        assert len(loader.loaded) == 0
        assert hub.get_subscriptions() == []
        assert hub.get_apis() == []
