"""
Artifact under test - a kernel module or an exploit.

Artifacts are described by ``.kmatrix.yaml`` in their source directory:

    name: hello
    type: module
    test: test.sh
    kernel: "ubuntu 18.04"
    build_params: ["EXTRA_CFLAGS=-DDEBUG"]
    mitigations:
      kaslr: true
      smep: true
      smap: false
      kpti: true
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

from kmatrix.errors import ConfigError

ARTIFACT_FILE = ".kmatrix.yaml"


class ArtifactKind(str, Enum):
    MODULE = "module"
    EXPLOIT = "exploit"


@dataclass(frozen=True)
class SecurityToggles:
    """Boot-time mitigations, each explicitly on or off."""

    kaslr: bool = True
    smep: bool = True
    smap: bool = True
    kpti: bool = True

    def to_dict(self) -> dict[str, bool]:
        return {"kaslr": self.kaslr, "smep": self.smep, "smap": self.smap, "kpti": self.kpti}

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> SecurityToggles:
        data = data or {}
        unknown = set(data) - {"kaslr", "smep", "smap", "kpti"}
        if unknown:
            raise ConfigError(f"Unknown mitigations: {', '.join(sorted(unknown))}")
        return cls(**{k: bool(v) for k, v in data.items()})


@dataclass(frozen=True)
class Artifact:
    """Workload under test."""

    name: str
    kind: ArtifactKind
    source_path: Path
    test_script: Path
    binary_path: Path | None = None
    build_params: tuple[str, ...] = ()
    kernel_pattern: str | None = None
    toggles: SecurityToggles = field(default_factory=SecurityToggles)

    @property
    def output_name(self) -> str:
        """File name of the built artifact."""
        if self.kind is ArtifactKind.MODULE:
            return f"{self.name}.ko"
        return self.name

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "kind": self.kind.value,
            "source_path": str(self.source_path),
            "test_script": str(self.test_script),
            "binary_path": str(self.binary_path) if self.binary_path else None,
            "build_params": list(self.build_params),
            "kernel_pattern": self.kernel_pattern,
            "toggles": self.toggles.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Artifact:
        binary = data.get("binary_path")
        return cls(
            name=str(data["name"]),
            kind=ArtifactKind(data["kind"]),
            source_path=Path(data["source_path"]),
            test_script=Path(data["test_script"]),
            binary_path=Path(binary) if binary else None,
            build_params=tuple(str(p) for p in data.get("build_params") or ()),
            kernel_pattern=data.get("kernel_pattern"),
            toggles=SecurityToggles.from_dict(data.get("toggles")),
        )


def load_artifact(path: Path) -> Artifact:
    """Load the artifact description from a source directory."""
    path = Path(path).expanduser().resolve()
    config_path = path / ARTIFACT_FILE if path.is_dir() else path
    source_dir = config_path.parent

    if not config_path.exists():
        raise ConfigError(f"No {ARTIFACT_FILE} in {source_dir}")

    try:
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"Cannot read {config_path}: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigError(f"{config_path} must be a mapping")

    try:
        kind = ArtifactKind(str(data.get("type", "")).lower())
    except ValueError:
        raise ConfigError(
            f"{config_path}: type must be 'module' or 'exploit', got {data.get('type')!r}"
        ) from None

    name = str(data.get("name") or source_dir.name)
    test_script = source_dir / str(data.get("test") or "test.sh")

    binary = data.get("binary")
    binary_path = (source_dir / str(binary)) if binary else None

    params = data.get("build_params") or []
    if isinstance(params, str):
        params = params.split()
    if not isinstance(params, list):
        raise ConfigError(f"{config_path}: build_params must be a list")

    mitigations = data.get("mitigations")
    if mitigations is not None and not isinstance(mitigations, dict):
        raise ConfigError(f"{config_path}: mitigations must be a mapping")

    return Artifact(
        name=name,
        kind=kind,
        source_path=source_dir,
        test_script=test_script,
        binary_path=binary_path,
        build_params=tuple(str(p) for p in params),
        kernel_pattern=data.get("kernel") or None,
        toggles=SecurityToggles.from_dict(mitigations),
    )


def skeleton(kind: ArtifactKind, name: str) -> dict[str, Any]:
    """Starting ``.kmatrix.yaml`` content; an empty kernel pattern matches every kernel."""
    return {
        "name": name,
        "type": kind.value,
        "test": "test.sh",
        "kernel": "",
        "build_params": [],
        "mitigations": SecurityToggles().to_dict(),
    }


def write_skeleton(directory: Path, kind: ArtifactKind, force: bool = False) -> Path:
    """Write an artifact skeleton into ``directory`` and return its path."""
    directory = Path(directory).expanduser().resolve()
    config_path = directory / ARTIFACT_FILE
    if config_path.exists() and not force:
        raise ConfigError(f"{config_path} already exists")

    try:
        with open(config_path, "w") as f:
            yaml.safe_dump(skeleton(kind, directory.name), f, sort_keys=False)
    except OSError as exc:
        raise ConfigError(f"Cannot write {config_path}: {exc}") from exc
    return config_path
