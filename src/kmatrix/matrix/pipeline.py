"""
Pipeline - carries one RunRequest to a classified RunResult.

Stages:
1. Build (or take the prebuilt binary)
2. Launch an isolated machine for the target kernel
3. Deploy the artifact and test script, execute the test
4. Teardown - machine shutdown and workspace cleanup on every path

Build and launch failures are the environment's fault (INFRA_ERROR); a
non-zero test exit is the artifact's fault (TEST_FAILED); any elapsed
timeout is recorded as TIMEOUT.
"""

from __future__ import annotations

import shlex
import shutil
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

import structlog

from kmatrix.artifact import ArtifactKind
from kmatrix.errors import DeployFailed, InfraError, RunTimeoutError
from kmatrix.matrix.models import RunRequest, RunResult, Verdict
from kmatrix.providers.base import BuildProvider, Machine, VMProvider
from kmatrix.providers.process import CommandResult
from kmatrix.workspace import WorkspaceManager

logger = structlog.get_logger()

REMOTE_TEST_SCRIPT = "/tmp/test.sh"


def _utc_now() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(UTC)


@dataclass
class _RunLog:
    """Combined output of a run, sectioned by stage."""

    stage: str = "setup"
    sections: list[tuple[str, str]] = field(default_factory=list)

    def begin(self, stage: str) -> None:
        self.stage = stage

    def add(self, text: str) -> None:
        if text:
            self.sections.append((self.stage, text))

    def render(self) -> str:
        parts = []
        for stage, text in self.sections:
            parts.append(f"== {stage} ==\n{text.rstrip()}\n")
        return "".join(parts)


class _StageClock:
    """Remaining budget of a stage bounded by a single timeout."""

    def __init__(self, timeout: float | None) -> None:
        self.timeout = timeout
        self._deadline = None if timeout is None else time.monotonic() + timeout

    def remaining(self) -> float | None:
        if self._deadline is None:
            return None
        remaining = self._deadline - time.monotonic()
        if remaining <= 0:
            raise RunTimeoutError(f"Run exceeded {self.timeout}s", reason="run_timeout")
        return remaining


class Pipeline:
    """
    Executes single runs end to end.

    A Pipeline holds no per-run state; ``run`` is safe to call from many
    threads at once. Each call works in its own workspace and machine.
    """

    def __init__(
        self,
        builder: BuildProvider,
        vm_provider: VMProvider,
        workspaces: WorkspaceManager,
        build_timeout: float | None = 600.0,
        provision_timeout: float | None = 600.0,
        dist_dir: Path | None = None,
        keep_workspace: bool = False,
    ) -> None:
        self.builder = builder
        self.vm_provider = vm_provider
        self.workspaces = workspaces
        self.build_timeout = build_timeout
        self.provision_timeout = provision_timeout
        self.dist_dir = dist_dir
        self.keep_workspace = keep_workspace

    def run(self, request: RunRequest, run_timeout: float | None) -> RunResult:
        started_at = _utc_now()
        started = time.monotonic()
        log = _RunLog()

        logger.info("Run started", run=request.label, tag=request.tag)

        workspace: Path | None = None
        try:
            workspace = self.workspaces.create(request)
            verdict, reason = self._run_stages(request, workspace, run_timeout, log)
        except OSError as exc:
            log.add(f"host error: {exc}")
            verdict, reason = Verdict.INFRA_ERROR, "host_error"
        finally:
            if workspace is not None and not self.keep_workspace:
                try:
                    self.workspaces.cleanup(workspace, output=log.render())
                except OSError as exc:
                    logger.warning("Workspace cleanup failed", workspace=str(workspace), error=str(exc))

        result = RunResult(
            request=request,
            verdict=verdict,
            reason=reason,
            output=log.render(),
            started_at=started_at,
            finished_at=_utc_now(),
            duration_seconds=time.monotonic() - started,
        )
        logger.info(
            "Run finished",
            run=request.label,
            verdict=verdict.value,
            reason=reason,
            duration_s=round(result.duration_seconds, 2),
        )
        return result

    def _run_stages(
        self,
        request: RunRequest,
        workspace: Path,
        run_timeout: float | None,
        log: _RunLog,
    ) -> tuple[Verdict, str | None]:
        try:
            log.begin("build")
            artifact_path = self._build(request, workspace, log)

            log.begin("launch")
            machine = self.vm_provider.launch(
                request.target, request.artifact.toggles, self.provision_timeout
            )
            with machine:
                log.begin("execute")
                verdict, reason = self._execute(machine, request, artifact_path, run_timeout, log)
                if verdict is not Verdict.SUCCESS:
                    log.begin("console")
                    log.add(machine.console_output())
                return verdict, reason
        except InfraError as exc:
            log.add(exc.output)
            log.add(str(exc))
            return Verdict.INFRA_ERROR, exc.reason
        except RunTimeoutError as exc:
            log.add(exc.output)
            log.add(str(exc))
            return Verdict.TIMEOUT, exc.reason

    def _build(self, request: RunRequest, workspace: Path, log: _RunLog) -> Path:
        artifact = request.artifact

        if artifact.binary_path:
            target = workspace / artifact.output_name
            shutil.copy(artifact.binary_path, target)
            log.add(f"using prebuilt {artifact.binary_path}")
            return target

        build = self.builder.build(artifact, request.target, workspace, self.build_timeout)
        log.add(build.output)

        if self.dist_dir:
            suffix = ".ko" if artifact.kind is ArtifactKind.MODULE else ""
            dist_path = self.dist_dir / f"{artifact.name}-{request.target.slug}{suffix}"
            try:
                self.dist_dir.mkdir(parents=True, exist_ok=True)
                shutil.copy(build.path, dist_path)
            except OSError as exc:
                logger.warning("Copy to dist failed", path=str(dist_path), error=str(exc))

        return build.path

    def _execute(
        self,
        machine: Machine,
        request: RunRequest,
        artifact_path: Path,
        run_timeout: float | None,
        log: _RunLog,
    ) -> tuple[Verdict, str | None]:
        artifact = request.artifact
        clock = _StageClock(run_timeout)
        remote = f"/tmp/{artifact.output_name}"

        self._deploy(machine, artifact_path, remote, clock)
        self._deploy(machine, artifact.test_script, REMOTE_TEST_SCRIPT, clock)
        quoted = shlex.quote(remote)

        if artifact.kind is ArtifactKind.MODULE:
            loaded = self._checked(machine.execute(f"insmod {quoted}", clock.remaining()), clock)
            log.add(loaded.output)
            if loaded.returncode != 0:
                return Verdict.TEST_FAILED, "insmod_failed"
        else:
            self._checked(machine.execute(f"chmod +x {quoted}", clock.remaining()), clock)

        test = self._checked(
            machine.execute(f"sh {REMOTE_TEST_SCRIPT} {quoted}", clock.remaining()), clock
        )
        log.add(test.output)
        if test.returncode != 0:
            return Verdict.TEST_FAILED, "test_failed"
        return Verdict.SUCCESS, None

    def _deploy(self, machine: Machine, local: Path, remote: str, clock: _StageClock) -> None:
        if not local.is_file():
            raise DeployFailed(f"{local} does not exist")
        copied = self._checked(machine.copy_to(local, remote, clock.remaining()), clock)
        if copied.returncode != 0:
            raise DeployFailed(f"Copy of {local.name} failed", output=copied.output)

    @staticmethod
    def _checked(result: CommandResult, clock: _StageClock) -> CommandResult:
        if result.timed_out:
            raise RunTimeoutError(
                f"Run exceeded {clock.timeout}s", reason="run_timeout", output=result.output
            )
        return result
