"""
Matrix Runner - scheduling entry point.

Coordinates one batch:
1. Select kernels from the resolved catalog
2. Expand targets x runs into requests
3. Schedule them through the pipeline
4. Evaluate reliability from the store
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import structlog

from kmatrix.catalog.selector import select_kernels
from kmatrix.errors import ConfigError
from kmatrix.matrix.models import RunResult
from kmatrix.matrix.scheduler import Deadline, Scheduler, ScheduleReport, expand_requests
from kmatrix.reliability import (
    DEFAULT_THRESHOLD,
    ReliabilityReport,
    TimeoutPolicy,
    evaluate_results,
    validate_threshold,
)
from kmatrix.store.results import ResultFilter

if TYPE_CHECKING:
    from kmatrix.artifact import Artifact
    from kmatrix.catalog.models import KernelCatalog
    from kmatrix.matrix.pipeline import Pipeline
    from kmatrix.store.results import ResultStore

logger = structlog.get_logger()


def new_tag() -> str:
    return f"pew-{uuid.uuid4().hex[:8]}"


@dataclass
class MatrixOutcome:
    """Aggregate reliability plus the results persisted by this batch."""

    tag: str
    reliability: ReliabilityReport
    schedule: ScheduleReport
    results: list[RunResult] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return self.reliability.passed


class MatrixRunner:
    def __init__(
        self,
        store: ResultStore,
        pipeline: Pipeline,
        threshold: float = DEFAULT_THRESHOLD,
        timeout_policy: TimeoutPolicy = TimeoutPolicy.COUNT,
    ) -> None:
        self.store = store
        self.pipeline = pipeline
        self.threshold = validate_threshold(threshold)
        self.timeout_policy = timeout_policy

    def run(
        self,
        catalog: KernelCatalog,
        artifact: Artifact,
        pattern: str | None = None,
        guess_all: bool = False,
        runs: int = 1,
        concurrency: int = 1,
        global_timeout: float | None = None,
        run_timeout: float | None = None,
        tag: str | None = None,
        max_kernels: int | None = None,
    ) -> MatrixOutcome:
        # Start the clock first: selection and checks count against the budget.
        deadline = Deadline.after(global_timeout) if global_timeout else None

        self._check_artifact(artifact)
        targets = select_kernels(
            catalog,
            pattern if pattern is not None else artifact.kernel_pattern,
            guess_all=guess_all,
            max_kernels=max_kernels,
        )
        tag = tag or new_tag()
        requests = expand_requests(artifact, targets, runs, tag)

        logger.info(
            "Starting matrix",
            artifact=artifact.name,
            kernels=len(targets),
            runs=runs,
            requests=len(requests),
            tag=tag,
        )

        scheduler = Scheduler(self.pipeline, self.store, concurrency, run_timeout)
        schedule = scheduler.schedule(requests, deadline)

        # Decide from the store, restricted to what this batch wrote.
        batch_ids = {result.id for result in schedule.results}
        stored = [r for r in self.store.query(ResultFilter(tag=tag)) if r.id in batch_ids]
        reliability = evaluate_results(stored, self.threshold, self.timeout_policy)

        logger.info(
            "Matrix finished",
            tag=tag,
            rate=reliability.rate,
            threshold=self.threshold,
            passed=reliability.passed,
            skipped=schedule.skipped,
        )
        return MatrixOutcome(tag=tag, reliability=reliability, schedule=schedule, results=stored)

    @staticmethod
    def _check_artifact(artifact: Artifact) -> None:
        if not artifact.test_script.is_file():
            raise ConfigError(f"Test script not found: {artifact.test_script}")
        if artifact.binary_path and not artifact.binary_path.is_file():
            raise ConfigError(f"Binary not found: {artifact.binary_path}")
