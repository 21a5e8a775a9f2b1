"""
Shared fixtures for renderapi tests.

Jobs run real /bin/sh subprocesses inside pytest's tmp_path, with time
budgets shrunk to fractions of a second.
"""

from pathlib import Path
from typing import Any, List, Optional

import pytest

from renderapi.settings import Settings


class RecordingLog:
    """LogSink that keeps every record in memory."""

    def __init__(self):
        self.records: List[dict] = []

    def __call__(self, level: str, job_id: Optional[str], message: str, **meta: Any) -> None:
        self.records.append({"level": level, "jobId": job_id, "message": message, **meta})

    def events(self, name: str) -> List[dict]:
        return [r for r in self.records if r.get("event") == name]


@pytest.fixture
def log() -> RecordingLog:
    return RecordingLog()


@pytest.fixture
def workspace_root(tmp_path: Path) -> Path:
    return tmp_path / "jobs"


@pytest.fixture
def settings(workspace_root: Path) -> Settings:
    return Settings(
        step_timeout=5,
        job_timeout=20,
        kill_grace=0.5,
        max_output_bytes=1024 * 1024,
        workspace_root=workspace_root,
    )
