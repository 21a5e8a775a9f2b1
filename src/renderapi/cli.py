# cli.py
from __future__ import annotations

import asyncio
import base64
import json
import shutil
import sys
from pathlib import Path

import click

from renderapi.executor import JobExecution
from renderapi.logs import configure_logging, json_log
from renderapi.model import JobRequest
from renderapi.settings import Settings
from renderapi.ui.console import Console, get_console, set_console


def load_request(request_file: Path, binary: Path | None = None) -> dict:
    """
    Read a request body from disk, optionally attaching a file as binaryData.

    Raises:
        click.ClickException: if the file is not a JSON object
    """
    try:
        data = json.loads(request_file.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise click.ClickException(f"{request_file} is not valid JSON: {e}")
    if not isinstance(data, dict):
        raise click.ClickException(f"{request_file} must contain a JSON object")

    if binary is not None:
        data["binaryData"] = base64.b64encode(binary.read_bytes()).decode("ascii")
    return data


async def _run_local(data: dict, request_file: Path, out: Path | None, settings: Settings) -> int:
    console = get_console()
    execution = JobExecution(JobRequest.from_dict(data), settings=settings, log=json_log)
    console.print_job_started(execution.job_id, str(request_file))

    result = await execution.run()
    for step in result.steps:
        console.print_step(step)

    if not result.ok:
        console.print_failure(result.to_payload())
        await execution.aclose()
        return 1

    dest = out or Path(result.artifact.name)
    try:
        await asyncio.to_thread(shutil.copyfile, result.artifact, dest)
    finally:
        await execution.aclose()

    console.print_success(dest, result.size, result.duration)
    return 0


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces, job log lines and stderr tails)",
)
@click.pass_context
def cli(ctx, debug):
    """renderapi: run shell pipelines as isolated render jobs."""
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--host", default=None, help="Bind address (defaults to $HOST or 0.0.0.0)")
@click.option("--port", default=None, type=int, help="Port (defaults to $PORT or 3000)")
@click.pass_context
def serve(ctx, host, port):
    """Serve the render API over HTTP."""
    import uvicorn

    console = get_console()
    settings = Settings.from_env()
    configure_logging("DEBUG" if ctx.obj.get("debug") else settings.log_level)

    try:
        uvicorn.run(
            "renderapi.app:app",
            host=host or settings.host,
            port=port or settings.port,
            log_level=settings.log_level.lower(),
        )
    except KeyboardInterrupt:
        console.print_info("\nServer stopped by user")
        sys.exit(0)
    except Exception as e:
        # Restart is the container orchestrator's job.
        json_log("error", None, "Uncaught exception", event="service.crashed", error=str(e))
        console.print_exception(e)
        sys.exit(1)


@cli.command()
@click.argument("request_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--binary",
    default=None,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="File to send as binaryData (for WRITE_BINARY_TO steps)",
)
@click.option(
    "--out",
    default=None,
    type=click.Path(dir_okay=False, path_type=Path),
    help="Where to copy the artifact (defaults to its file name in the current directory)",
)
@click.pass_context
def run(ctx, request_file, binary, out):
    """Run one render request locally."""
    console = get_console()
    debug = ctx.obj.get("debug", False)
    settings = Settings.from_env()
    configure_logging("DEBUG" if debug else "WARNING")

    data = load_request(request_file, binary)
    try:
        code = asyncio.run(_run_local(data, request_file, out, settings))
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except OSError as e:
        console.print_error(
            "Could not write output",
            str(e),
            suggestion="Check that --out points to a writable location.",
        )
        sys.exit(1)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)
    sys.exit(code)


if __name__ == "__main__":
    cli()
