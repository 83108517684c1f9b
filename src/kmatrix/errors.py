"""
Error taxonomy for kmatrix.

Batch-fatal errors (ConfigError, SelectionError, StoreError) abort the
invocation. Per-run errors (InfraError, TestFailure, RunTimeoutError) are
classified into a verdict by the pipeline and never abort the batch.
"""

from __future__ import annotations


class KmatrixError(Exception):
    """Base exception for kmatrix errors."""

    pass


class ConfigError(KmatrixError):
    """Malformed or missing configuration, kernel catalog, or artifact file."""

    pass


class SelectionError(KmatrixError):
    """No kernel in the catalog matches the request."""

    pass


class InfraError(KmatrixError):
    """Build or VM provisioning failure, not attributable to the artifact."""

    reason = "infra_error"

    def __init__(self, message: str, output: str = "") -> None:
        super().__init__(message)
        self.output = output


class BuildFailed(InfraError):
    """Artifact build exited non-zero."""

    reason = "build_failed"


class LaunchFailed(InfraError):
    """Virtual machine could not be booted."""

    reason = "launch_failed"


class DeployFailed(InfraError):
    """Artifact or test script could not be copied into the guest."""

    reason = "deploy_failed"


class TestFailure(KmatrixError):
    """Test script exited non-zero."""

    __test__ = False  # not a pytest test class

    reason = "test_failed"


class RunTimeoutError(KmatrixError):
    """A run or provisioning timeout elapsed."""

    def __init__(self, message: str, reason: str = "run_timeout", output: str = "") -> None:
        super().__init__(message)
        self.reason = reason
        self.output = output


class StoreError(KmatrixError):
    """Result persistence failed. Halts scheduling of new requests."""

    pass


class ResultNotFound(KmatrixError, LookupError):
    """No stored result carries the requested identifier."""

    def __init__(self, result_id: int) -> None:
        super().__init__(f"No result with id {result_id}")
        self.result_id = result_id
