"""Run requests, verdicts and results."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from kmatrix.artifact import Artifact
from kmatrix.catalog.models import KernelDescriptor


class Verdict(str, Enum):
    """Terminal classification of a run."""

    SUCCESS = "success"
    TEST_FAILED = "test_failed"
    TIMEOUT = "timeout"
    INFRA_ERROR = "infra_error"


@dataclass(frozen=True)
class RunRequest:
    """One schedulable (artifact, kernel, attempt) unit."""

    artifact: Artifact
    target: KernelDescriptor
    attempt: int
    tag: str

    @property
    def label(self) -> str:
        return f"{self.artifact.name}@{self.target.description}#{self.attempt}"


@dataclass(frozen=True)
class RunResult:
    """Classified outcome of one request. ``id`` is assigned by the store."""

    request: RunRequest
    verdict: Verdict
    output: str
    started_at: datetime
    finished_at: datetime
    duration_seconds: float
    reason: str | None = None
    id: int | None = None

    @property
    def success(self) -> bool:
        return self.verdict is Verdict.SUCCESS
