"""
Matrix - test-matrix orchestration.

Modules:
    models      - RunRequest, RunResult, Verdict
    pipeline    - Build, launch, execute, teardown for one run
    scheduler   - Bounded worker pool under a global deadline
    runner      - Entry point: select, expand, schedule, evaluate
"""

from kmatrix.matrix.models import RunRequest, RunResult, Verdict
from kmatrix.matrix.pipeline import Pipeline
from kmatrix.matrix.scheduler import Deadline, Scheduler, ScheduleReport, expand_requests

__all__ = [
    "Deadline",
    "Pipeline",
    "RunRequest",
    "RunResult",
    "ScheduleReport",
    "Scheduler",
    "Verdict",
    "expand_requests",
]
