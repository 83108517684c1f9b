"""
Reliability evaluation.

Reduces a set of run results to a success rate and a pass/fail decision.
Everything here is a pure function of its inputs; the store is queried
explicitly at decision time.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from kmatrix.matrix.models import RunResult, Verdict

if TYPE_CHECKING:
    from kmatrix.store.results import ResultFilter, ResultStore

DEFAULT_THRESHOLD = 1.0


class TimeoutPolicy(str, Enum):
    """How TIMEOUT verdicts enter the success rate."""

    COUNT = "count"  # in the denominator, like TEST_FAILED
    EXCLUDE = "exclude"  # dropped from the denominator


def verdict_counts(results: Iterable[RunResult]) -> dict[Verdict, int]:
    counts = Counter(result.verdict for result in results)
    return {verdict: counts.get(verdict, 0) for verdict in Verdict}


def rate(
    results: Iterable[RunResult],
    timeout_policy: TimeoutPolicy = TimeoutPolicy.COUNT,
) -> float | None:
    """Successes over terminal results; None when there is nothing to count."""
    counts = verdict_counts(results)
    total = sum(counts.values())
    if timeout_policy is TimeoutPolicy.EXCLUDE:
        total -= counts[Verdict.TIMEOUT]
    if total == 0:
        return None
    return counts[Verdict.SUCCESS] / total


def validate_threshold(threshold: float) -> float:
    if not 0.0 < threshold <= 1.0:
        raise ValueError(f"threshold must be in (0, 1], got {threshold}")
    return threshold


def gate(success_rate: float | None, threshold: float = DEFAULT_THRESHOLD) -> bool:
    """True when the batch passes. An undefined rate never passes."""
    validate_threshold(threshold)
    if success_rate is None:
        return False
    return success_rate >= threshold


@dataclass
class ReliabilityReport:
    rate: float | None
    passed: bool
    threshold: float
    timeout_policy: TimeoutPolicy
    counts: dict[Verdict, int] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return sum(self.counts.values())


def evaluate_results(
    results: Iterable[RunResult],
    threshold: float = DEFAULT_THRESHOLD,
    timeout_policy: TimeoutPolicy = TimeoutPolicy.COUNT,
) -> ReliabilityReport:
    results = list(results)
    success_rate = rate(results, timeout_policy)
    return ReliabilityReport(
        rate=success_rate,
        passed=gate(success_rate, threshold),
        threshold=threshold,
        timeout_policy=timeout_policy,
        counts=verdict_counts(results),
    )


def evaluate(
    store: ResultStore,
    filter: ResultFilter,
    threshold: float = DEFAULT_THRESHOLD,
    timeout_policy: TimeoutPolicy = TimeoutPolicy.COUNT,
) -> ReliabilityReport:
    """Query ``store`` and evaluate the matching results."""
    return evaluate_results(store.query(filter), threshold, timeout_policy)
