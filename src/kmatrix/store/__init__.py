"""
Store - durable run history.

Modules:
    results     - SQLite-backed append-only result store
"""

from kmatrix.store.results import ResultFilter, ResultStore

__all__ = ["ResultFilter", "ResultStore"]
