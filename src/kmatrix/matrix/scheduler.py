"""
Scheduler - drives a request matrix through the pipeline.

Guarantees:
- At most ``concurrency`` runs execute at once; waiting requests start FIFO
- Each request starts at most once
- Once the deadline passes no new run starts; running ones finish under
  their own run timeout
- Every completed result is appended to the store; requests that never
  started leave no record
- A StoreError stops new starts immediately and is re-raised once the
  in-flight runs have finished
"""

from __future__ import annotations

import concurrent.futures
import threading
import time
import traceback
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import structlog

from kmatrix.artifact import Artifact
from kmatrix.catalog.models import KernelDescriptor
from kmatrix.errors import StoreError
from kmatrix.matrix.models import RunRequest, RunResult, Verdict
from kmatrix.matrix.pipeline import Pipeline

if TYPE_CHECKING:
    from kmatrix.store.results import ResultStore

logger = structlog.get_logger()


class Deadline:
    """A point on the monotonic clock after which nothing new may start."""

    def __init__(self, at: float) -> None:
        self.at = at

    @classmethod
    def after(cls, seconds: float) -> Deadline:
        return cls(time.monotonic() + seconds)

    def remaining(self) -> float:
        return max(0.0, self.at - time.monotonic())

    def expired(self) -> bool:
        return time.monotonic() >= self.at


def expand_requests(
    artifact: Artifact,
    targets: Sequence[KernelDescriptor],
    runs: int,
    tag: str,
) -> list[RunRequest]:
    """Target-major expansion of ``targets`` x ``runs`` attempts."""
    if runs < 1:
        raise ValueError(f"runs must be >= 1, got {runs}")
    return [
        RunRequest(artifact=artifact, target=target, attempt=attempt, tag=tag)
        for target in targets
        for attempt in range(runs)
    ]


@dataclass
class ScheduleReport:
    """What happened to a batch of requests."""

    results: list[RunResult] = field(default_factory=list)
    started: int = 0
    skipped: int = 0
    unpersisted: int = 0
    deadline_reached: bool = False


class _Batch:
    """Shared state of one ``schedule`` call."""

    def __init__(self, deadline: Deadline | None) -> None:
        self.deadline = deadline
        self.halt = threading.Event()
        self.lock = threading.Lock()
        self.report = ScheduleReport()
        self.store_error: StoreError | None = None

    def admit(self) -> bool:
        if self.halt.is_set():
            return False
        if self.deadline is not None and self.deadline.expired():
            with self.lock:
                self.report.deadline_reached = True
            return False
        return True


class Scheduler:
    """Bounded worker pool over the pipeline."""

    def __init__(
        self,
        pipeline: Pipeline,
        store: ResultStore,
        concurrency: int,
        run_timeout: float | None,
    ) -> None:
        if concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {concurrency}")
        self.pipeline = pipeline
        self.store = store
        self.concurrency = concurrency
        self.run_timeout = run_timeout

    def schedule(
        self,
        requests: Sequence[RunRequest],
        deadline: Deadline | None = None,
    ) -> ScheduleReport:
        batch = _Batch(deadline)
        logger.info(
            "Scheduling batch",
            requests=len(requests),
            concurrency=self.concurrency,
            deadline_s=round(deadline.remaining(), 1) if deadline else None,
        )

        executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=self.concurrency, thread_name_prefix="kmatrix-run"
        )
        try:
            futures = [executor.submit(self._run_one, batch, request) for request in requests]
            self._wait(batch, futures)
        except BaseException:
            batch.halt.set()
            executor.shutdown(wait=True, cancel_futures=True)
            raise
        executor.shutdown(wait=True)

        report = batch.report
        report.skipped = len(requests) - report.started
        logger.info(
            "Batch finished",
            started=report.started,
            skipped=report.skipped,
            persisted=len(report.results),
            deadline_reached=report.deadline_reached,
        )

        if batch.store_error is not None:
            raise batch.store_error
        return report

    def _wait(self, batch: _Batch, futures: list[concurrent.futures.Future]) -> None:
        cancelled = False
        pending = set(futures)

        while pending:
            timeout = None
            if batch.deadline is not None and not cancelled:
                timeout = batch.deadline.remaining()

            done, pending = concurrent.futures.wait(
                pending, timeout=timeout, return_when=concurrent.futures.FIRST_COMPLETED
            )
            for future in done:
                if not future.cancelled():
                    # Re-raise anything _run_one did not handle.
                    future.result()

            stop = batch.halt.is_set() or (batch.deadline is not None and batch.deadline.expired())
            if stop and not cancelled:
                cancelled = True
                if batch.deadline is not None and batch.deadline.expired():
                    batch.report.deadline_reached = True
                dropped = sum(1 for future in pending if future.cancel())
                if dropped:
                    logger.warning("Not starting queued runs", dropped=dropped)
                pending = {future for future in pending if not future.cancelled()}

    def _run_one(self, batch: _Batch, request: RunRequest) -> None:
        if not batch.admit():
            return
        with batch.lock:
            batch.report.started += 1

        try:
            result = self.pipeline.run(request, self.run_timeout)
        except Exception:
            logger.exception("Pipeline crashed", run=request.label)
            now = datetime.now(UTC)
            result = RunResult(
                request=request,
                verdict=Verdict.INFRA_ERROR,
                reason="internal_error",
                output=traceback.format_exc(),
                started_at=now,
                finished_at=now,
                duration_seconds=0.0,
            )

        try:
            stored = self.store.append(result)
        except StoreError as exc:
            batch.halt.set()
            logger.error(
                "Result not persisted, halting new runs",
                run=request.label,
                verdict=result.verdict.value,
                error=str(exc),
            )
            with batch.lock:
                batch.report.unpersisted += 1
                if batch.store_error is None:
                    batch.store_error = exc
            return

        with batch.lock:
            batch.report.results.append(stored)
