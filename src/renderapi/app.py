from __future__ import annotations

import asyncio
import tempfile
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict
from starlette.background import BackgroundTask

from .errors import RenderError
from .executor import JobExecution
from .logs import LogSink, json_log
from .model import JobRequest
from .runner import Spawn, run_command, spawn_shell
from .settings import Settings

# Fails (non-zero) when ffmpeg is missing, prints only the version line otherwise.
FFMPEG_PROBE = "out=$(ffmpeg -version) && printf '%s\\n' \"$out\" | head -n 1"
PROBE_TIMEOUT = 10

# -------------------- Schemas --------------------

class RenderRequest(BaseModel):
    # Loose on purpose: the engine validates and answers with a job id.
    model_config = ConfigDict(extra="ignore")

    pipeline: Any = None
    output_path: Any = None
    binaryData: Any = None


class HealthResponse(BaseModel):
    status: str
    ffmpeg: str
    ffmpegVersion: Optional[str] = None
    timestamp: str
    config: dict[str, Any]

# -------------------- App --------------------

def create_app(
    settings: Settings | None = None,
    *,
    log: LogSink = json_log,
    spawn: Spawn = spawn_shell,
) -> FastAPI:
    settings = settings or Settings.from_env()

    def _loop_exception(loop: asyncio.AbstractEventLoop, context: dict) -> None:
        exc = context.get("exception")
        log(
            "error",
            None,
            "Unhandled exception in background task",
            event="service.unhandled",
            error=str(exc) if exc else context.get("message"),
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        asyncio.get_running_loop().set_exception_handler(_loop_exception)
        log("info", None, "Render API started", event="service.started", **settings.to_dict())
        yield

    app = FastAPI(title="Render API", lifespan=lifespan)
    app.state.settings = settings

    @app.middleware("http")
    async def limit_body_size(request: Request, call_next):
        length = request.headers.get("content-length")
        if length and length.isdigit() and int(length) > settings.max_body_bytes:
            return JSONResponse(
                status_code=413,
                content={
                    "error": "Request body too large",
                    "code": "payload_too_large",
                    "limit": settings.max_body_size,
                },
            )
        return await call_next(request)

    @app.get("/health", response_model=HealthResponse)
    async def health():
        version = None
        try:
            probe = await run_command(FFMPEG_PROBE, tempfile.gettempdir(), PROBE_TIMEOUT, spawn=spawn)
            if probe.ok:
                lines = probe.stdout_tail.strip().splitlines()
                version = lines[0] if lines else ""
        except RenderError:
            pass

        ok = version is not None
        body = HealthResponse(
            status="ok" if ok else "degraded",
            ffmpeg="ok" if ok else "unavailable: FFmpeg binary not found in PATH",
            ffmpegVersion=version,
            timestamp=datetime.now(timezone.utc).isoformat(),
            config=settings.to_dict(),
        )
        return JSONResponse(status_code=200 if ok else 503, content=body.model_dump())

    @app.post("/render")
    async def render(req: RenderRequest):
        execution = JobExecution(
            JobRequest.from_dict(req.model_dump()),
            settings=settings,
            log=log,
            spawn=spawn,
        )
        result = await execution.run()
        if not result.ok:
            return JSONResponse(status_code=result.http_status, content=result.to_payload())

        # Workspace goes away once the body has been sent (or failed to send).
        return StreamingResponse(
            execution.stream_artifact(),
            media_type="application/octet-stream",
            headers={
                "X-Job-Id": result.job_id,
                "Content-Length": str(result.size),
                "Content-Disposition": f'attachment; filename="{result.artifact.name}"',
            },
            background=BackgroundTask(execution.aclose),
        )

    return app


app = create_app()
