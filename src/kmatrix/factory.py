"""Wire providers and the pipeline from configuration."""

from __future__ import annotations

from pathlib import Path

from kmatrix.config import MatrixConfig
from kmatrix.matrix.pipeline import Pipeline
from kmatrix.providers.docker import DockerBuildProvider
from kmatrix.providers.qemu import QemuVMProvider
from kmatrix.workspace import WorkspaceManager


def build_pipeline(config: MatrixConfig, dist_dir: Path | None = None) -> Pipeline:
    builder = DockerBuildProvider(
        binary=config.docker.binary,
        image_prefix=config.docker.image_prefix,
        registry=config.docker.registry,
    )
    vm_provider = QemuVMProvider(
        binary=config.qemu.binary,
        memory_mb=config.qemu.memory_mb,
        cpus=config.qemu.cpus,
        ssh_user=config.qemu.ssh_user,
        ssh_key=config.qemu.ssh_key,
        kvm=config.qemu.kvm,
    )
    return Pipeline(
        builder=builder,
        vm_provider=vm_provider,
        workspaces=WorkspaceManager(config.work_dir, config.archives_dir),
        build_timeout=config.docker.timeout_seconds,
        provision_timeout=config.qemu.timeout_seconds,
        dist_dir=dist_dir.resolve() if dist_dir else None,
    )
