from .errors import RenderError
from .executor import JobExecution, JobResult, run_job
from .model import Job, JobRequest, JobStatus, Step, StepKind, StepResult
from .runner import run_command
from .settings import Settings
from .workspace import WorkspaceManager

__all__ = [
    "RenderError",
    "JobExecution",
    "JobResult",
    "run_job",
    "Job",
    "JobRequest",
    "JobStatus",
    "Step",
    "StepKind",
    "StepResult",
    "run_command",
    "Settings",
    "WorkspaceManager",
]
