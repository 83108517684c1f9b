"""
Docker build provider.

Each target kernel has a container image carrying its headers under
``/lib/modules/<release>/build``. The artifact source is copied into the
run's private workspace and built there with ``make``.
"""

from __future__ import annotations

import shutil
from pathlib import Path

import structlog

from kmatrix.artifact import Artifact
from kmatrix.catalog.models import KernelDescriptor
from kmatrix.errors import BuildFailed, ConfigError, RunTimeoutError
from kmatrix.providers.base import BuildOutput, BuildProvider
from kmatrix.providers.process import run_command

logger = structlog.get_logger()

_IGNORED_SOURCES = shutil.ignore_patterns(".git", "*.o", "*.ko", ".*.cmd")

DOCKER_CHECK_TIMEOUT = 30.0


def check_docker_access(binary: str = "docker", timeout: float = DOCKER_CHECK_TIMEOUT) -> None:
    """Fail fast when the current user cannot talk to the docker daemon."""
    result = run_command([binary, "ps"], timeout=timeout)
    if result.ok:
        return
    raise ConfigError(
        f"Cannot use {binary}: {result.output.strip() or 'no output'}\n"
        "You have two options:\n"
        "\t1. Add user to group docker;\n"
        "\t2. Run kmatrix with sudo."
    )


class DockerBuildProvider(BuildProvider):
    name = "docker"

    def __init__(
        self,
        binary: str = "docker",
        image_prefix: str = "kmatrix",
        registry: str | None = None,
    ) -> None:
        self.binary = binary
        self.image_prefix = image_prefix
        self.registry = registry.rstrip("/") if registry else None

    def image_for(self, target: KernelDescriptor) -> str:
        image = target.image_name(self.image_prefix)
        if self.registry and not target.container_image:
            return f"{self.registry}/{image}"
        return image

    def command(self, artifact: Artifact, target: KernelDescriptor, src_dir: Path) -> list[str]:
        return [
            self.binary,
            "run",
            "--rm",
            "--network=none",
            "-v",
            f"{src_dir}:/work",
            "-w",
            "/work",
            self.image_for(target),
            "make",
            f"KERNEL=/lib/modules/{target.release}/build",
            f"TARGET={artifact.name}",
            *artifact.build_params,
        ]

    def build(
        self,
        artifact: Artifact,
        target: KernelDescriptor,
        workspace: Path,
        timeout: float | None,
    ) -> BuildOutput:
        src_dir = workspace / "src"
        shutil.copytree(artifact.source_path, src_dir, ignore=_IGNORED_SOURCES)

        logger.info("Building artifact", artifact=artifact.name, kernel=target.description)
        result = run_command(self.command(artifact, target, src_dir), timeout=timeout)

        if result.timed_out:
            raise RunTimeoutError(
                f"Build exceeded {timeout}s", reason="build_timeout", output=result.output
            )
        if result.returncode != 0:
            raise BuildFailed(f"Build exited with {result.returncode}", output=result.output)

        built = src_dir / artifact.output_name
        if not built.is_file():
            raise BuildFailed(
                f"Build succeeded but {artifact.output_name} was not produced",
                output=result.output,
            )

        return BuildOutput(path=built, output=result.output)
