# model.py
from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.TIMED_OUT)


class StepKind(str, Enum):
    COMMAND = "command"
    BINARY = "binary"
    MALFORMED = "malformed"


@dataclass(frozen=True)
class Step:
    """A single pipeline entry after resolution."""
    index: int
    raw: Any
    command: str | None
    kind: StepKind = StepKind.COMMAND
    target: str | None = None  # WRITE_BINARY_TO destination

    @property
    def number(self) -> int:
        # 1-based, used in every message a client sees
        return self.index + 1


@dataclass(frozen=True)
class StepResult:
    """Outcome of one command. Only the tails of each stream are kept."""
    index: int
    duration: float
    stdout_tail: str
    stderr_tail: str
    ok: bool
    exit_code: int | None = None
    signal: int | None = None
    timed_out: bool = False
    killed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step": self.index + 1,
            "ok": self.ok,
            "durationMs": int(self.duration * 1000),
            "exitCode": self.exit_code,
            "signal": self.signal,
            "timedOut": self.timed_out,
        }


@dataclass
class JobRequest:
    """
    The parsed request body, as handed over by the transport.

    Fields are deliberately loose (`Any`): the orchestrator owns validation so
    that every rejection carries a job id and a precise message.
    """
    pipeline: Any = None
    output_path: Any = None
    binary_data: Any = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> JobRequest:
        if not isinstance(data, dict):
            return cls()
        return cls(
            pipeline=data.get("pipeline"),
            output_path=data.get("output_path"),
            binary_data=data.get("binaryData"),
        )


def new_job_id() -> str:
    return uuid.uuid4().hex


@dataclass
class Job:
    """
    One request's unit of work.

    Created on receipt and owned by exactly one JobExecution until it is
    finalized; `workspace` is derived from `id` and never shared.
    """
    id: str = field(default_factory=new_job_id)
    steps: List[Step] = field(default_factory=list)
    output_path: Optional[Path] = None
    payload: Optional[bytes] = None
    workspace: Optional[Path] = None
    status: JobStatus = JobStatus.PENDING
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    started_at: float = field(default_factory=time.monotonic)

    def elapsed(self) -> float:
        return time.monotonic() - self.started_at
