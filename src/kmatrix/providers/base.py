"""
Provider interfaces for building artifacts and booting test machines.

The pipeline only talks to these abstractions; docker and qemu are the
default implementations.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from types import TracebackType

import structlog

from kmatrix.artifact import Artifact, SecurityToggles
from kmatrix.catalog.models import KernelDescriptor
from kmatrix.providers.process import CommandResult

logger = structlog.get_logger()


@dataclass
class BuildOutput:
    """A built artifact and the build log."""

    path: Path
    output: str


class BuildProvider(ABC):
    """Compiles an artifact against a target kernel's headers."""

    name: str

    @abstractmethod
    def build(
        self,
        artifact: Artifact,
        target: KernelDescriptor,
        workspace: Path,
        timeout: float | None,
    ) -> BuildOutput:
        """
        Build ``artifact`` inside ``workspace``.

        Raises:
            BuildFailed: the build exited non-zero
            RunTimeoutError: the build exceeded ``timeout``
        """
        ...


class Machine(ABC):
    """
    A booted, isolated test machine.

    Use as a context manager: ``shutdown`` runs on every exit path and its
    failures are logged, never raised.
    """

    @abstractmethod
    def copy_to(self, local: Path, remote: str, timeout: float | None) -> CommandResult:
        """Copy a host file into the guest."""
        ...

    @abstractmethod
    def execute(self, command: str, timeout: float | None) -> CommandResult:
        """Run a shell command in the guest, capturing combined output."""
        ...

    @abstractmethod
    def shutdown(self) -> None:
        """Power off and release every host resource held by the machine."""
        ...

    def console_output(self) -> str:
        """Serial console log, when the provider keeps one."""
        return ""

    def __enter__(self) -> Machine:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        try:
            self.shutdown()
        except Exception as shutdown_error:
            logger.warning("Machine shutdown failed", error=str(shutdown_error))


class VMProvider(ABC):
    """Boots machines from a kernel image and rootfs."""

    name: str

    @abstractmethod
    def launch(
        self,
        target: KernelDescriptor,
        toggles: SecurityToggles,
        timeout: float | None,
    ) -> Machine:
        """
        Boot ``target`` and wait until it accepts commands.

        Raises:
            LaunchFailed: the machine could not be booted
            RunTimeoutError: it did not come up within ``timeout``
        """
        ...
