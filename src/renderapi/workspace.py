# workspace.py
from __future__ import annotations

import asyncio
import shutil
from pathlib import Path

from .errors import WorkspaceError
from .logs import LogSink, json_log


class WorkspaceManager:
    """Allocates and removes one directory per job under `root`."""

    def __init__(self, root: str | Path, log: LogSink = json_log):
        self.root = Path(root)
        self.log = log

    def path_for(self, job_id: str) -> Path:
        return self.root / f"job_{job_id}"

    async def create(self, job_id: str) -> Path:
        """
        Create the workspace for `job_id` (parents included).

        Raises:
            WorkspaceError: if the filesystem refuses, or the path already
            exists (job ids are never reused).
        """
        path = self.path_for(job_id)
        try:
            await asyncio.to_thread(path.mkdir, parents=True, exist_ok=False)
        except FileExistsError as e:
            raise WorkspaceError(
                "Workspace already exists",
                details={"workDir": str(path)},
            ) from e
        except OSError as e:
            raise WorkspaceError(
                f"Could not create work directory: {e.strerror or e}",
                details={"workDir": str(path)},
            ) from e

        self.log("info", job_id, "Work directory created", event="workspace.created", workDir=str(path))
        return path

    async def destroy(self, path: str | Path, job_id: str | None = None) -> bool:
        """
        Remove the workspace tree. Never raises: a leaked directory is left to
        the host's temp retention and must not mask the job outcome.
        """
        try:
            await asyncio.to_thread(shutil.rmtree, path)
        except FileNotFoundError:
            self.log("info", job_id, "Work directory already gone", event="workspace.removed", workDir=str(path))
            return True
        except Exception as e:
            self.log(
                "error",
                job_id,
                "Failed to clean up work directory",
                event="workspace.cleanup_failed",
                workDir=str(path),
                error=str(e),
            )
            return False

        self.log("info", job_id, "Work directory cleaned up", event="workspace.removed", workDir=str(path))
        return True
