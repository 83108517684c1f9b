"""
WorkspaceManager - private per-run build directories.

Responsibilities:
- Allocate a unique directory per run so concurrent runs never share files
- Write the run marker and log
- Archive the run log on cleanup
"""

from __future__ import annotations

import json
import shutil
import uuid
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from kmatrix.matrix.models import RunRequest

logger = structlog.get_logger()

RUN_LOG = "run.log"


class WorkspaceManager:
    """Manages isolated per-run directories under ``work_dir``."""

    def __init__(self, work_dir: Path, archives_dir: Path | None = None) -> None:
        self.work_dir = Path(work_dir)
        self.archives_dir = Path(archives_dir) if archives_dir else None

        self.work_dir.mkdir(parents=True, exist_ok=True)
        if self.archives_dir:
            self.archives_dir.mkdir(parents=True, exist_ok=True)

    def create(self, request: RunRequest) -> Path:
        """Create an empty directory owned by one run."""
        name = f"run-{request.target.slug}-{request.attempt}-{uuid.uuid4().hex[:12]}"
        path = self.work_dir / name
        # exist_ok=False: a collision means two runs would share state.
        path.mkdir(parents=True, exist_ok=False)

        marker = {
            "id": name,
            "artifact": request.artifact.name,
            "kernel": request.target.description,
            "attempt": request.attempt,
            "tag": request.tag,
            "created": datetime.now(UTC).isoformat(),
        }
        (path / ".run").write_text(json.dumps(marker, indent=2))
        logger.debug("Workspace created", workspace=name)
        return path

    def cleanup(self, path: Path, output: str | None = None) -> None:
        """Archive the run log (when archiving is on) and remove the directory."""
        if output is not None:
            (path / RUN_LOG).write_text(output)

        if self.archives_dir:
            archive_path = self.archives_dir / path.name
            archive_path.mkdir(parents=True, exist_ok=True)
            for filename in (RUN_LOG, ".run"):
                src = path / filename
                if src.exists():
                    shutil.copy(src, archive_path)

        shutil.rmtree(path, ignore_errors=True)
        logger.debug("Workspace cleaned up", workspace=path.name)

