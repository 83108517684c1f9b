"""
SQLite-backed result store.

Append-only history of run results. Writes are serialized through one
connection and committed before ``append`` returns; readers use their own
connections and see a consistent prefix (WAL mode).
"""

from __future__ import annotations

import dataclasses
import json
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

import structlog

from kmatrix.artifact import Artifact
from kmatrix.catalog.models import KernelDescriptor
from kmatrix.errors import ResultNotFound, StoreError
from kmatrix.matrix.models import RunRequest, RunResult, Verdict

logger = structlog.get_logger()

_SCHEMA = """
CREATE TABLE IF NOT EXISTS results (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    tag TEXT NOT NULL,
    artifact_name TEXT NOT NULL,
    artifact_json TEXT NOT NULL,
    distro TEXT NOT NULL,
    distro_version TEXT NOT NULL,
    kernel_release TEXT NOT NULL,
    kernel_json TEXT NOT NULL,
    attempt INTEGER NOT NULL,
    verdict TEXT NOT NULL,
    reason TEXT,
    started_at TEXT NOT NULL,
    finished_at TEXT NOT NULL,
    duration_seconds REAL NOT NULL,
    output TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_results_tag ON results(tag);
CREATE INDEX IF NOT EXISTS idx_results_artifact ON results(artifact_name);
CREATE INDEX IF NOT EXISTS idx_results_started ON results(started_at);
"""


@dataclass(frozen=True)
class ResultFilter:
    """Query constraints; ``None`` fields do not filter."""

    tag: str | None = None
    artifact: str | None = None
    since: datetime | None = None
    until: datetime | None = None
    limit: int | None = None
    newest_first: bool = True


def _dumps(data: dict[str, Any]) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=True)


class ResultStore:
    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self._write_lock = threading.Lock()
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self.conn = self._connect()
            self.conn.execute("PRAGMA journal_mode=WAL")
            self.conn.executescript(_SCHEMA)
            self.conn.commit()
        except (OSError, sqlite3.Error) as exc:
            raise StoreError(f"Cannot open result store {self.db_path}: {exc}") from exc

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30.0, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA synchronous=FULL")
        return conn

    @contextmanager
    def _reader(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = self._connect()
        except sqlite3.Error as exc:
            raise StoreError(f"Cannot read result store: {exc}") from exc
        try:
            yield conn
        except sqlite3.Error as exc:
            raise StoreError(f"Cannot read result store: {exc}") from exc
        finally:
            conn.close()

    def close(self) -> None:
        with self._write_lock:
            self.conn.close()

    def __enter__(self) -> ResultStore:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def append(self, result: RunResult) -> RunResult:
        """Persist ``result`` and return it with its assigned id."""
        request = result.request
        row = (
            request.tag,
            request.artifact.name,
            _dumps(request.artifact.to_dict()),
            request.target.distro,
            request.target.version,
            request.target.release,
            _dumps(request.target.to_dict()),
            request.attempt,
            result.verdict.value,
            result.reason,
            result.started_at.isoformat(),
            result.finished_at.isoformat(),
            result.duration_seconds,
            result.output,
        )

        with self._write_lock:
            try:
                with self.conn:
                    cursor = self.conn.execute(
                        """
                        INSERT INTO results (
                            tag, artifact_name, artifact_json,
                            distro, distro_version, kernel_release, kernel_json,
                            attempt, verdict, reason,
                            started_at, finished_at, duration_seconds, output
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        row,
                    )
            except sqlite3.Error as exc:
                raise StoreError(f"Cannot append result for {request.label}: {exc}") from exc

        result_id = cursor.lastrowid
        logger.debug("Result stored", id=result_id, run=request.label, verdict=result.verdict.value)
        return dataclasses.replace(result, id=result_id)

    def get(self, result_id: int) -> RunResult:
        with self._reader() as conn:
            row = conn.execute("SELECT * FROM results WHERE id = ?", (result_id,)).fetchone()
        if row is None:
            raise ResultNotFound(result_id)
        return self._from_row(row)

    def query(self, filter: ResultFilter | None = None) -> list[RunResult]:
        filter = filter or ResultFilter()
        clauses: list[str] = []
        params: list[Any] = []

        if filter.tag is not None:
            clauses.append("tag = ?")
            params.append(filter.tag)
        if filter.artifact is not None:
            clauses.append("artifact_name = ?")
            params.append(filter.artifact)
        if filter.since is not None:
            clauses.append("started_at >= ?")
            params.append(filter.since.isoformat())
        if filter.until is not None:
            clauses.append("started_at < ?")
            params.append(filter.until.isoformat())

        sql = "SELECT * FROM results"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        # limit always keeps the most recent rows; newest_first only orders them.
        sql += " ORDER BY id DESC"
        if filter.limit is not None:
            sql += " LIMIT ?"
            params.append(max(filter.limit, 0))
        if not filter.newest_first:
            sql = f"SELECT * FROM ({sql}) ORDER BY id ASC"

        with self._reader() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._from_row(row) for row in rows]

    def tags(self) -> list[str]:
        with self._reader() as conn:
            rows = conn.execute("SELECT DISTINCT tag FROM results ORDER BY tag").fetchall()
        return [row["tag"] for row in rows]

    @staticmethod
    def _from_row(row: sqlite3.Row) -> RunResult:
        try:
            artifact = Artifact.from_dict(json.loads(row["artifact_json"]))
            target = KernelDescriptor.from_dict(json.loads(row["kernel_json"]))
        except (json.JSONDecodeError, KeyError, ValueError) as exc:
            raise StoreError(f"Corrupt result record {row['id']}: {exc}") from exc

        return RunResult(
            id=row["id"],
            request=RunRequest(
                artifact=artifact,
                target=target,
                attempt=row["attempt"],
                tag=row["tag"],
            ),
            verdict=Verdict(row["verdict"]),
            reason=row["reason"],
            output=row["output"],
            started_at=datetime.fromisoformat(row["started_at"]),
            finished_at=datetime.fromisoformat(row["finished_at"]),
            duration_seconds=row["duration_seconds"],
        )
