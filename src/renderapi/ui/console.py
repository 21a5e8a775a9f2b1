"""Console output formatting utilities for renderapi."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Dict, Optional

from ..model import StepResult


class Console:
    """Centralized console output formatting."""
    
    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.
        
        Args:
            debug: If True, show detailed output including stack traces
        """
        self.debug = debug
    
    def print_job_started(self, job_id: str, request_file: str) -> None:
        """Print job start information."""
        print("\nJOB STARTED")
        print(f"Job ID: {job_id}")
        print(f"Request: {request_file}")
        print()
    
    def print_step(self, result: StepResult) -> None:
        """Print one finished command step."""
        status = "ok" if result.ok else "FAILED"
        print(f"STEP {result.index + 1}: {status} ({result.duration:.1f}s)")
        if self.debug and result.stderr_tail:
            print(result.stderr_tail)
    
    def print_success(self, path: Path, size: int, duration: float) -> None:
        """Print success message."""
        print("\nSTATUS: success")
        print(f"Output: {path} ({size} bytes)")
        print(f"Duration: {duration:.1f}s")
    
    def print_failure(self, payload: Dict[str, Any]) -> None:
        """
        Print a failed job's error payload.
        
        Args:
            payload: The client-facing error object (error, code, jobId, ...)
        """
        print(f"\nJOB FAILED: {payload.get('error')}", file=sys.stderr)
        print(f"Code: {payload.get('code')}", file=sys.stderr)
        if payload.get("step") is not None:
            print(f"Step: {payload['step']}", file=sys.stderr)
        detail = payload.get("detail")
        if detail:
            if self.debug:
                print(f"Error details: {detail}", file=sys.stderr)
            else:
                # Last line is usually the interesting one for ffmpeg
                lines = detail.strip().splitlines()
                print(f"Error: {lines[-1] if lines else detail}", file=sys.stderr)
    
    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """Print structured error message."""
        print(f"\nERROR: {title}", file=sys.stderr)
        print(f"{message}", file=sys.stderr)
        if details:
            for detail in details:
                print(f"  {detail}", file=sys.stderr)
        if suggestion:
            print(f"\n{suggestion}", file=sys.stderr)
    
    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            print(f"Error: {exc}", file=sys.stderr)
    
    def print_info(self, message: str) -> None:
        """Print informational message."""
        print(message)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
