"""Module descriptors and manifests: Pydantic models and YAML loader."""

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

MANIFEST_FILE = "manifest.yaml"


class ModuleDescriptor(BaseModel):
    """Entry of the static bootstrap list. path is relative to the modules root."""

    name: str
    path: str
    description: str = ""
    required: bool = False


class ModuleManifest(BaseModel):
    """Manifest schema for <modules_dir>/<module>/manifest.yaml."""

    name: str
    version: str = "1.0.0"
    description: str = ""
    entrypoint: str  # file:ClassName, e.g. main:LoggingModule
    depends_on: list[str] = Field(default_factory=list)
    required: bool = False
    enabled: bool = True
    config: dict[str, Any] = Field(default_factory=dict)

    @field_validator("entrypoint")
    @classmethod
    def _validate_entrypoint(cls, value: str) -> str:
        module_name, sep, class_name = value.partition(":")
        if not sep or not module_name or not class_name:
            raise ValueError("entrypoint must look like 'file:ClassName'")
        return value


def load_manifest(path: Path) -> ModuleManifest:
    """Read and validate manifest.yaml. Raises on invalid YAML or validation error."""
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"Manifest must be a YAML object: {path}")
    return ModuleManifest.model_validate(data)


def discover_modules(modules_dir: Path) -> list[ModuleDescriptor]:
    """Scan modules_dir for manifest.yaml; return descriptors of enabled modules."""
    descriptors: list[ModuleDescriptor] = []
    if not modules_dir.exists():
        return descriptors
    for d in sorted(modules_dir.iterdir()):
        if not d.is_dir():
            continue
        manifest_path = d / MANIFEST_FILE
        if not manifest_path.exists():
            continue
        try:
            manifest = load_manifest(manifest_path)
        except Exception as e:
            logger.exception("Invalid manifest %s: %s", manifest_path, e)
            continue
        if manifest.enabled:
            descriptors.append(
                ModuleDescriptor(
                    name=manifest.name,
                    path=d.name,
                    description=manifest.description,
                    required=manifest.required,
                )
            )
    return descriptors
