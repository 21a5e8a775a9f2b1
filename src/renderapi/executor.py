# executor.py
from __future__ import annotations

import asyncio
import traceback
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from .errors import (
    JobTimeout,
    MalformedStep,
    OutputNotProduced,
    RenderError,
    StepExecutionError,
    StepTimedOut,
    ValidationError,
    WorkspaceError,
    excerpt,
)
from .logs import LogSink, json_log
from .model import Job, JobRequest, JobStatus, Step, StepKind, StepResult
from .pipeline import parse_pipeline, requires_payload, validate_command
from .runner import Spawn, run_command, spawn_shell
from .settings import Settings
from .step_workflows.binary import USAGE_HINT, decode_payload, write_binary
from .workspace import WorkspaceManager

# Commands are truncated in log lines.
LOG_COMMAND_LIMIT = 200

_TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.RUNNING, JobStatus.FAILED},
    JobStatus.RUNNING: {JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.TIMED_OUT},
}


@dataclass
class JobResult:
    """What the transport needs to answer one request."""
    job_id: str
    status: JobStatus
    artifact: Optional[Path] = None
    size: int = 0
    error: Optional[RenderError] = None
    steps: List[StepResult] = field(default_factory=list)
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status is JobStatus.SUCCEEDED

    @property
    def http_status(self) -> int:
        if self.ok:
            return 200
        return self.error.http_status if self.error else 500

    def to_payload(self) -> Dict[str, Any]:
        if self.error is not None:
            return self.error.to_payload(self.job_id)
        return {
            "jobId": self.job_id,
            "status": self.status.value,
            "sizeBytes": self.size,
            "steps": [s.to_dict() for s in self.steps],
        }


class JobExecution:
    """
    Drives one job from request to terminal state.

    `run()` never raises for job-level problems: every outcome ends up in a
    JobResult. The workspace is removed exactly once, in the background:
    right away on failure, or when the caller calls `release()` after it has
    sent the artifact. `cleanup_done` is set once removal has finished.
    """

    def __init__(
        self,
        request: JobRequest,
        *,
        settings: Settings | None = None,
        log: LogSink = json_log,
        spawn: Spawn = spawn_shell,
        workspaces: WorkspaceManager | None = None,
    ):
        self.request = request
        self.settings = settings or Settings.from_env()
        self.log = log
        self.spawn = spawn
        self.workspaces = workspaces or WorkspaceManager(self.settings.workspace_root, log)

        self.job = Job()
        self.results: List[StepResult] = []
        self.result: Optional[JobResult] = None
        self.cleanup_done = asyncio.Event()

        self._current: Optional[Step] = None
        self._workspace_created = False
        self._released = False
        self._cleanup_task: Optional[asyncio.Task] = None

    @property
    def job_id(self) -> str:
        return self.job.id

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def run(self) -> JobResult:
        job = self.job
        self.log("info", job.id, "Render job started", event="job.started")

        try:
            try:
                self._prepare()
            except ValidationError as e:
                return self._fail(e, event="job.rejected")

            self._transition(JobStatus.RUNNING)
            try:
                size = await asyncio.wait_for(self._execute(), self.settings.job_timeout)
            except asyncio.TimeoutError:
                return self._time_out()
            except RenderError as e:
                return self._fail(e)
            return self._succeed(size)

        except asyncio.CancelledError:
            self._fail(RenderError("Job cancelled"))
            raise
        except Exception as e:
            self.log(
                "error",
                job.id,
                "Unhandled error in render pipeline",
                event="job.crashed",
                error=str(e),
                stack=traceback.format_exc(),
            )
            return self._fail(RenderError("Internal server error", detail=str(e)))
        finally:
            if job.status is not JobStatus.SUCCEEDED:
                self.release()

    def _prepare(self) -> None:
        """Everything that can be rejected before a workspace exists."""
        job = self.job
        steps = parse_pipeline(self.request.pipeline)

        # Presence only; decoding happens at the first binary step.
        data = self.request.binary_data
        if requires_payload(steps) and not (isinstance(data, str) and data.strip()):
            raise ValidationError(
                f"Pipeline contains a WRITE_BINARY_TO step but binaryData is missing or not a base64 string. In your client, {USAGE_HINT}"
            )

        output_path = self.request.output_path
        if output_path is not None and not isinstance(output_path, str):
            raise ValidationError("'output_path' must be a string")

        job.steps = steps
        job.workspace = self.workspaces.path_for(job.id)
        job.output_path = self._output_path()

        self.log(
            "info",
            job.id,
            "Pipeline received",
            event="pipeline.received",
            steps=len(steps),
            outputFile=str(job.output_path),
        )

    def _output_path(self) -> Path:
        workspace = self.job.workspace
        if self.request.output_path:
            path = Path(self.request.output_path)
            return path if path.is_absolute() else workspace / path
        return workspace / self.settings.output_name

    async def _execute(self) -> int:
        job = self.job
        # Set before awaiting: a timer firing mid-mkdir must still clean up.
        self._workspace_created = True
        try:
            job.workspace = await self.workspaces.create(job.id)
        except WorkspaceError:
            self._workspace_created = False
            raise

        for step in job.steps:
            self._current = step
            try:
                await self._run_step(step)
            except RenderError as e:
                if e.step is None:
                    e.step = step.number
                raise
        self._current = None

        return await self._verify_output()

    async def _run_step(self, step: Step) -> None:
        job = self.job
        label = f"Step {step.number}/{len(job.steps)}"

        if step.kind is StepKind.MALFORMED:
            # A producer mistake, not a reason to fail the whole render.
            skipped = MalformedStep(f"{label}: no command string, skipping", step=step.number)
            self.log("error", job.id, skipped.message, event="step.skipped", code=skipped.code, step=step.number, raw=repr(step.raw)[:LOG_COMMAND_LIMIT])
            return

        if step.kind is StepKind.BINARY:
            self.log("info", job.id, f"{label}: WRITE_BINARY_TO instruction", event="step.started", step=step.number, targetPath=step.target)
            if job.payload is None:
                job.payload = decode_payload(self.request.binary_data)
            written = await write_binary(step.target or "", job.payload, base=job.workspace)
            self.log("info", job.id, f"Binary data written ({written} bytes)", event="binary.written", step=step.number, targetPath=step.target, bytes=written)
            return

        command = validate_command(step)
        self.log("info", job.id, f"{label}: executing", event="step.started", step=step.number, command=command[:LOG_COMMAND_LIMIT])

        result = await run_command(
            command,
            job.workspace,
            self.settings.step_timeout,
            index=step.index,
            grace=self.settings.kill_grace,
            max_output=self.settings.max_output_bytes,
            spawn=self.spawn,
        )
        self.results.append(result)
        duration_ms = int(result.duration * 1000)

        if result.ok:
            self.log(
                "info",
                job.id,
                f"{label}: completed in {duration_ms}ms",
                event="step.completed",
                step=step.number,
                durationMs=duration_ms,
                stderr=result.stderr_tail[-500:],
            )
            return

        self.log(
            "error",
            job.id,
            f"{label}: FAILED after {duration_ms}ms",
            event="step.failed",
            step=step.number,
            durationMs=duration_ms,
            exitCode=result.exit_code,
            signal=result.signal,
            timedOut=result.timed_out,
            stderr=result.stderr_tail,
            stdout=result.stdout_tail,
        )
        raise self._step_error(step, result)

    def _step_error(self, step: Step, result: StepResult) -> StepExecutionError:
        details = {"exitCode": result.exit_code, "signal": result.signal}
        if result.timed_out:
            return StepTimedOut(
                f"Pipeline failed at step {step.number}: timed out after {self.settings.step_timeout:g}s",
                step=step.number,
                detail=result.stderr_tail or result.stdout_tail or "Step exceeded its time budget",
                details=details,
            )
        if result.signal is not None:
            reason = f"Command terminated by signal {result.signal}"
        else:
            reason = f"Command exited with code {result.exit_code}"
        return StepExecutionError(
            f"Pipeline failed at step {step.number}",
            step=step.number,
            detail=result.stderr_tail or result.stdout_tail or reason,
            details=details,
        )

    async def _verify_output(self) -> int:
        # Success means "the artifact exists", not "every exit code was 0".
        path = self.job.output_path
        if not await asyncio.to_thread(path.is_file):
            self.log("error", self.job.id, "Output file not found after pipeline completed", event="job.output_missing", outputFile=str(path))
            raise OutputNotProduced(
                "Rendering completed but output file was not produced",
                details={"expectedPath": str(path)},
            )
        stat = await asyncio.to_thread(path.stat)
        return stat.st_size

    # ------------------------------------------------------------------
    # Terminal states
    # ------------------------------------------------------------------

    def _transition(self, status: JobStatus) -> None:
        current = self.job.status
        if status not in _TRANSITIONS.get(current, set()):
            raise RuntimeError(f"Illegal job transition {current.value} -> {status.value}")
        self.job.status = status

    def _finish(self, error: Optional[RenderError] = None, size: int = 0) -> JobResult:
        job = self.job
        self.result = JobResult(
            job_id=job.id,
            status=job.status,
            artifact=job.output_path if error is None else None,
            size=size,
            error=error,
            steps=list(self.results),
            duration=job.elapsed(),
        )
        return self.result

    def _fail(self, error: RenderError, event: str = "job.failed") -> JobResult:
        if not self.job.status.terminal:
            self._transition(JobStatus.FAILED)
        self.log(
            "error",
            self.job.id,
            error.message,
            event=event,
            code=error.code,
            step=error.step,
            detail=excerpt(error.detail, 500),
        )
        return self._finish(error)

    def _time_out(self) -> JobResult:
        timeout_ms = int(self.settings.job_timeout * 1000)
        step = self._current.number if self._current else None
        self._transition(JobStatus.TIMED_OUT)
        self.log("error", self.job.id, "Job timed out, aborting", event="job.timed_out", timeoutMs=timeout_ms, step=step)
        return self._finish(
            JobTimeout(
                "Job exceeded maximum allowed time",
                step=step,
                details={"timeoutMs": timeout_ms},
            )
        )

    def _succeed(self, size: int) -> JobResult:
        self._transition(JobStatus.SUCCEEDED)
        self.log(
            "info",
            self.job.id,
            "Output file ready",
            event="job.succeeded",
            outputFile=str(self.job.output_path),
            sizeBytes=size,
        )
        return self._finish(size=size)

    # ------------------------------------------------------------------
    # Artifact + cleanup
    # ------------------------------------------------------------------

    async def stream_artifact(self, chunk_size: int = 1024 * 1024) -> AsyncIterator[bytes]:
        """Yield the artifact in chunks, then release the workspace."""
        if self.result is None or not self.result.ok:
            raise RuntimeError("Job has no artifact to stream")
        try:
            with self.result.artifact.open("rb") as f:
                while True:
                    chunk = await asyncio.to_thread(f.read, chunk_size)
                    if not chunk:
                        break
                    yield chunk
            self.log("info", self.job.id, "Output file sent successfully", event="artifact.sent")
        except Exception as e:
            self.log("error", self.job.id, "Error sending output file", event="artifact.failed", error=str(e))
            raise
        finally:
            self.release()

    def release(self) -> Optional[asyncio.Task]:
        """
        Schedule workspace removal. Idempotent; returns the cleanup task (or
        None when no workspace was ever created).
        """
        if self._released:
            return self._cleanup_task
        self._released = True

        if not self._workspace_created:
            self.cleanup_done.set()
            return None

        self._cleanup_task = asyncio.create_task(self._cleanup())
        return self._cleanup_task

    async def _cleanup(self) -> None:
        try:
            await self.workspaces.destroy(self.job.workspace, self.job.id)
        finally:
            self.cleanup_done.set()

    async def aclose(self) -> None:
        """Release and wait for the workspace to be gone."""
        self.release()
        await self.cleanup_done.wait()


async def run_job(request: JobRequest, **kwargs: Any) -> Tuple[JobExecution, JobResult]:
    execution = JobExecution(request, **kwargs)
    return execution, await execution.run()
