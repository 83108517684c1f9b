"""
kmatrix configuration.

Loaded from a YAML file (default ``~/.kmatrix/config.yaml``) with
environment variable overrides. A missing file yields the defaults.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from kmatrix.errors import ConfigError
from kmatrix.reliability import DEFAULT_THRESHOLD, TimeoutPolicy, validate_threshold

ENV_USER_KERNELS = "KMATRIX_KCFG"
ENV_DB = "KMATRIX_DB"


def default_home() -> Path:
    return Path.home() / ".kmatrix"


def _load_yaml(path: Path) -> dict[str, Any]:
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"Cannot read config {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Config {path} must be a mapping")
    return data


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    value = data.get(name) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"'{name}' must be a mapping")
    return value


def _filter_keys(src: dict[str, Any], allowed: set[str]) -> dict[str, Any]:
    return {k: v for k, v in src.items() if k in allowed}


@dataclass
class QemuConfig:
    """Test machine settings."""

    binary: str = "qemu-system-x86_64"
    memory_mb: int = 256
    cpus: int = 1
    timeout_seconds: float = 600.0  # provisioning
    ssh_user: str = "root"
    ssh_key: Path | None = None
    kvm: bool | None = None  # None = use /dev/kvm when accessible


@dataclass
class DockerConfig:
    """Build container settings."""

    binary: str = "docker"
    image_prefix: str = "kmatrix"
    registry: str | None = None
    timeout_seconds: float = 600.0


@dataclass
class SchedulingConfig:
    concurrency: int = field(default_factory=lambda: os.cpu_count() or 1)
    global_timeout_seconds: float | None = None  # None = never stop starting runs
    run_timeout_seconds: float | None = 600.0


@dataclass
class ReliabilityConfig:
    threshold: float = DEFAULT_THRESHOLD
    timeout_policy: TimeoutPolicy = TimeoutPolicy.COUNT


@dataclass
class MatrixConfig:
    """Main configuration."""

    home: Path = field(default_factory=default_home)
    kernels_path: Path | None = None
    user_kernels_path: Path | None = None
    db_path: Path | None = None
    work_dir: Path | None = None
    archives_dir: Path | None = None

    qemu: QemuConfig = field(default_factory=QemuConfig)
    docker: DockerConfig = field(default_factory=DockerConfig)
    scheduling: SchedulingConfig = field(default_factory=SchedulingConfig)
    reliability: ReliabilityConfig = field(default_factory=ReliabilityConfig)

    config_path: Path | None = None

    def __post_init__(self) -> None:
        self._normalize_paths()

    @classmethod
    def load(cls, config_path: Path | None = None) -> MatrixConfig:
        """Load configuration from YAML, then apply environment overrides."""
        config_path = Path(config_path) if config_path else default_home() / "config.yaml"
        data = _load_yaml(config_path) if config_path.exists() else {}
        config = cls.from_dict(data, config_path=config_path)
        config.apply_env(os.environ)
        return config

    @classmethod
    def from_dict(cls, data: dict[str, Any], config_path: Path | None = None) -> MatrixConfig:
        data = dict(data or {})

        def _path(key: str) -> Path | None:
            value = data.get(key)
            return Path(str(value)).expanduser() if value else None

        qemu_data = _filter_keys(
            _section(data, "qemu"),
            {"binary", "memory_mb", "cpus", "timeout_seconds", "ssh_user", "ssh_key", "kvm"},
        )
        docker_data = _filter_keys(
            _section(data, "docker"),
            {"binary", "image_prefix", "registry", "timeout_seconds"},
        )
        scheduling_data = _filter_keys(
            _section(data, "scheduling"),
            {"concurrency", "global_timeout_seconds", "run_timeout_seconds"},
        )
        reliability_data = _section(data, "reliability")

        try:
            if qemu_data.get("ssh_key"):
                qemu_data["ssh_key"] = Path(str(qemu_data["ssh_key"])).expanduser()
            qemu = QemuConfig(**qemu_data)
            qemu.memory_mb = int(qemu.memory_mb)
            qemu.cpus = int(qemu.cpus)
            qemu.timeout_seconds = float(qemu.timeout_seconds)

            docker = DockerConfig(**docker_data)
            docker.timeout_seconds = float(docker.timeout_seconds)

            scheduling = SchedulingConfig(**scheduling_data)
            scheduling.concurrency = int(scheduling.concurrency)
            if scheduling.global_timeout_seconds is not None:
                scheduling.global_timeout_seconds = float(scheduling.global_timeout_seconds)
            if scheduling.run_timeout_seconds is not None:
                scheduling.run_timeout_seconds = float(scheduling.run_timeout_seconds)

            reliability = ReliabilityConfig(
                threshold=validate_threshold(
                    float(reliability_data.get("threshold", DEFAULT_THRESHOLD))
                ),
                timeout_policy=TimeoutPolicy(
                    str(reliability_data.get("timeout_policy", TimeoutPolicy.COUNT.value))
                ),
            )
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"Invalid config value: {exc}") from exc

        if scheduling.concurrency < 1:
            raise ConfigError("scheduling.concurrency must be >= 1")

        home = _path("home") or (config_path.parent if config_path else default_home())
        return cls(
            home=home,
            kernels_path=_path("kernels"),
            user_kernels_path=_path("user_kernels"),
            db_path=_path("database"),
            work_dir=_path("work_dir"),
            archives_dir=_path("archives_dir"),
            qemu=qemu,
            docker=docker,
            scheduling=scheduling,
            reliability=reliability,
            config_path=config_path,
        )

    def apply_env(self, env: Mapping[str, str]) -> None:
        if env.get(ENV_USER_KERNELS):
            self.user_kernels_path = Path(env[ENV_USER_KERNELS]).expanduser()
        if env.get(ENV_DB):
            self.db_path = Path(env[ENV_DB]).expanduser()

    def _normalize_paths(self) -> None:
        self.home = Path(self.home).expanduser()

        def _resolve(path: Path | None, default: str) -> Path:
            if path is None:
                return self.home / default
            return path if path.is_absolute() else self.home / path

        self.kernels_path = _resolve(self.kernels_path, "kernels.yaml")
        self.user_kernels_path = _resolve(self.user_kernels_path, "kernels.user.yaml")
        self.db_path = _resolve(self.db_path, "results.db")
        self.work_dir = _resolve(self.work_dir, "work")
        if self.archives_dir is not None:
            self.archives_dir = _resolve(self.archives_dir, "archives")
