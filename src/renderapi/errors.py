# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

# Longest diagnostic excerpt ever returned to a client.
DETAIL_LIMIT = 1000


def excerpt(text: str | None, limit: int = DETAIL_LIMIT) -> str:
    """Return the last `limit` characters of `text`."""
    if not text:
        return ""
    return text[-limit:]


@dataclass(eq=False)
class RenderError(Exception):
    """
    Structured render error with enough context for:
      - one client-facing JSON payload
      - a machine-readable category (`code`)
      - correlating against the job's log lines
    """
    message: str
    step: Optional[int] = None          # 1-based
    detail: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    code = "internal_error"
    http_status = 500

    def __str__(self) -> str:
        lines = [f"{self.code}: {self.message}"]
        if self.step is not None:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)

    def to_payload(self, job_id: str) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "error": self.message,
            "code": self.code,
            "jobId": job_id,
        }
        if self.step is not None:
            payload["step"] = self.step
        if self.detail:
            payload["detail"] = excerpt(self.detail)
        payload.update(self.details)
        return payload


class ValidationError(RenderError):
    """Client fault detected before any workspace exists."""
    code = "validation_error"
    http_status = 400


class MalformedStep(RenderError):
    code = "malformed_step"
    http_status = 400


class EmptyCommand(RenderError):
    code = "empty_command"


class BinaryInjectionError(RenderError):
    code = "binary_injection_failed"


class MissingPayload(BinaryInjectionError):
    code = "missing_payload"
    http_status = 400


class StepExecutionError(RenderError):
    code = "step_failed"


class StepTimedOut(StepExecutionError):
    code = "step_timeout"


class OutputTooLarge(StepExecutionError):
    code = "output_too_large"


class OutputNotProduced(RenderError):
    code = "output_not_produced"


class JobTimeout(RenderError):
    code = "job_timeout"
    http_status = 504


class WorkspaceError(RenderError):
    code = "workspace_error"
