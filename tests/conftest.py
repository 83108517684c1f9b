"""Pytest configuration and shared fakes for kmatrix (src layout)."""

from __future__ import annotations

import sys
import threading
import time
from datetime import UTC, datetime
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from kmatrix.artifact import Artifact, ArtifactKind, SecurityToggles  # noqa: E402
from kmatrix.catalog.models import KernelDescriptor  # noqa: E402
from kmatrix.errors import LaunchFailed, RunTimeoutError, BuildFailed  # noqa: E402
from kmatrix.matrix.models import RunRequest, RunResult, Verdict  # noqa: E402
from kmatrix.providers.base import BuildOutput, BuildProvider, Machine, VMProvider  # noqa: E402
from kmatrix.providers.process import CommandResult  # noqa: E402


def make_descriptor(
    distro: str = "ubuntu",
    version: str = "18.04",
    release: str = "4.15.0-20-generic",
    rootfs: Path | None = Path("/images/ubuntu.img"),
) -> KernelDescriptor:
    return KernelDescriptor(
        distro=distro,
        version=version,
        release=release,
        kernel_path=Path(f"/kernels/vmlinuz-{release}"),
        rootfs_path=rootfs,
    )


def make_result(
    verdict: Verdict = Verdict.SUCCESS,
    tag: str = "t",
    artifact: Artifact | None = None,
    target: KernelDescriptor | None = None,
    attempt: int = 0,
    started_at: datetime | None = None,
) -> RunResult:
    artifact = artifact or Artifact(
        name="hello",
        kind=ArtifactKind.MODULE,
        source_path=Path("/src/hello"),
        test_script=Path("/src/hello/test.sh"),
    )
    started_at = started_at or datetime(2026, 1, 2, 3, 4, 5, tzinfo=UTC)
    return RunResult(
        request=RunRequest(
            artifact=artifact,
            target=target or make_descriptor(),
            attempt=attempt,
            tag=tag,
        ),
        verdict=verdict,
        reason=None if verdict is Verdict.SUCCESS else verdict.value,
        output="== execute ==\nok\n",
        started_at=started_at,
        finished_at=started_at,
        duration_seconds=1.5,
    )


class FakeBuilder(BuildProvider):
    """Writes a dummy artifact into the workspace, or fails as told."""

    name = "fake"

    def __init__(self, mode: str = "ok") -> None:
        self.mode = mode
        self.workspaces: list[Path] = []
        self._lock = threading.Lock()

    def build(self, artifact, target, workspace, timeout):
        with self._lock:
            self.workspaces.append(workspace)
        if self.mode == "fail":
            raise BuildFailed("Build exited with 2", output="make: *** error")
        if self.mode == "timeout":
            raise RunTimeoutError("Build exceeded", reason="build_timeout")
        built = workspace / artifact.output_name
        built.write_text(f"built for {target.release}")
        return BuildOutput(path=built, output="make: ok")


class FakeMachine(Machine):
    """Answers guest commands from a prefix table."""

    def __init__(self, responses: dict[str, CommandResult] | None = None) -> None:
        self.responses = responses or {}
        self.commands: list[str] = []
        self.copied: list[tuple[Path, str, str]] = []
        self.shutdowns = 0

    def copy_to(self, local, remote, timeout):
        self.copied.append((local, remote, Path(local).read_text()))
        return self.responses.get("scp", CommandResult(0, ""))

    def execute(self, command, timeout):
        self.commands.append(command)
        for prefix, result in self.responses.items():
            if command.startswith(prefix):
                return result
        return CommandResult(0, f"ran {command}")

    def shutdown(self):
        self.shutdowns += 1

    def console_output(self):
        return "[    0.000000] Linux version"


class FakeVMProvider(VMProvider):
    name = "fake"

    def __init__(self, mode: str = "ok", responses: dict[str, CommandResult] | None = None) -> None:
        self.mode = mode
        self.responses = responses
        self.machines: list[FakeMachine] = []
        self.launches: list[tuple[KernelDescriptor, SecurityToggles]] = []
        self._lock = threading.Lock()

    def launch(self, target, toggles, timeout):
        with self._lock:
            self.launches.append((target, toggles))
        if self.mode == "fail":
            raise LaunchFailed("qemu exited with 1 during boot", output="qemu: bad image")
        if self.mode == "timeout":
            raise RunTimeoutError("Machine not reachable", reason="launch_timeout")
        machine = FakeMachine(self.responses)
        with self._lock:
            self.machines.append(machine)
        return machine


class SleepPipeline:
    """Pipeline stand-in that sleeps and records start order and parallelism."""

    def __init__(self, duration: float, verdicts: dict[int, Verdict] | None = None) -> None:
        self.duration = duration
        self.verdicts = verdicts or {}
        self.started: list[RunRequest] = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def run(self, request, run_timeout):
        started_at = datetime.now(UTC)
        with self._lock:
            self.started.append(request)
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            time.sleep(self.duration)
        finally:
            with self._lock:
                self.active -= 1
        return RunResult(
            request=request,
            verdict=self.verdicts.get(request.attempt, Verdict.SUCCESS),
            output="slept",
            started_at=started_at,
            finished_at=datetime.now(UTC),
            duration_seconds=self.duration,
        )


@pytest.fixture
def artifact(tmp_path: Path) -> Artifact:
    source = tmp_path / "hello"
    source.mkdir()
    (source / "hello.c").write_text("int init_module(void) { return 0; }\n")
    test_script = source / "test.sh"
    test_script.write_text("#!/bin/sh\ngrep -q hello /proc/modules\n")
    return Artifact(
        name="hello",
        kind=ArtifactKind.MODULE,
        source_path=source,
        test_script=test_script,
    )


@pytest.fixture
def exploit(tmp_path: Path) -> Artifact:
    source = tmp_path / "pwn"
    source.mkdir()
    test_script = source / "test.sh"
    test_script.write_text("#!/bin/sh\n$1 && id -u | grep -q '^0$'\n")
    return Artifact(
        name="pwn",
        kind=ArtifactKind.EXPLOIT,
        source_path=source,
        test_script=test_script,
        toggles=SecurityToggles(kaslr=False, smep=True, smap=False, kpti=True),
    )
