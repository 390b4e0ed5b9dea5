"""Tests for module manifests and descriptor discovery."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from aither_core.modules.manifest import ModuleManifest, discover_modules, load_manifest


def _write(dir_: Path, text: str) -> Path:
    dir_.mkdir(parents=True, exist_ok=True)
    path = dir_ / "manifest.yaml"
    path.write_text(text, encoding="utf-8")
    return path


class TestManifest:
    """ModuleManifest validation and YAML loading."""

    def test_minimal(self) -> None:
        m = ModuleManifest.model_validate({"name": "Lab", "entrypoint": "main:Lab"})
        assert m.depends_on == []
        assert m.enabled is True
        assert m.required is False

    def test_entrypoint_must_name_class(self) -> None:
        with pytest.raises(ValidationError):
            ModuleManifest.model_validate({"name": "Lab", "entrypoint": "main"})

    def test_load_yaml(self, tmp_path: Path) -> None:
        path = _write(
            tmp_path / "lab",
            "name: LabRunner\nentrypoint: main:LabRunner\ndepends_on: [ConfigurationCore]\nconfig:\n  max_vms: 2\n",
        )
        m = load_manifest(path)
        assert m.depends_on == ["ConfigurationCore"]
        assert m.config == {"max_vms": 2}

    def test_non_mapping_rejected(self, tmp_path: Path) -> None:
        path = _write(tmp_path / "bad", "- just\n- a list\n")
        with pytest.raises(ValueError, match="YAML object"):
            load_manifest(path)


class TestDiscover:
    """discover_modules over a modules directory."""

    def test_enabled_modules_sorted_by_directory(self, tmp_path: Path) -> None:
        _write(tmp_path / "b_mod", "name: B\nentrypoint: main:B\nrequired: true\n")
        _write(tmp_path / "a_mod", "name: A\nentrypoint: main:A\ndescription: first\n")
        _write(tmp_path / "off", "name: Off\nentrypoint: main:Off\nenabled: false\n")
        _write(tmp_path / "broken", "name: Broken\n")
        (tmp_path / "no_manifest").mkdir()
        found = discover_modules(tmp_path)
        assert [(d.name, d.path) for d in found] == [("A", "a_mod"), ("B", "b_mod")]
        assert found[0].description == "first"
        assert found[1].required is True

    def test_missing_dir(self, tmp_path: Path) -> None:
        assert discover_modules(tmp_path / "absent") == []
