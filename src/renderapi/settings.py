from __future__ import annotations

import os
import re
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

# Job budget sits one minute under the hosting platform's ~15 min request
# lifetime so cleanup and the response still fit.
DEFAULT_STEP_TIMEOUT_MS = 240_000
DEFAULT_JOB_TIMEOUT_MS = 840_000
DEFAULT_KILL_GRACE_MS = 5_000
DEFAULT_MAX_OUTPUT_BYTES = 50 * 1024 * 1024
DEFAULT_MAX_BODY_SIZE = "100mb"
DEFAULT_OUTPUT_NAME = "final_output.mp4"

_SIZE_RE = re.compile(r"^\s*(\d+)\s*(b|kb|mb|gb)?\s*$", re.IGNORECASE)
_SIZE_UNITS = {"b": 1, "kb": 1024, "mb": 1024 ** 2, "gb": 1024 ** 3}


def _int_env(env: Mapping[str, str], name: str, default: int) -> int:
    # Unset, unparsable or non-positive values all mean "use the default".
    try:
        value = int(env.get(name, ""))
    except ValueError:
        return default
    return value if value > 0 else default


def parse_size(value: str, default: int = 100 * 1024 ** 2) -> int:
    """Parse sizes such as '100mb' or '512kb' into bytes."""
    m = _SIZE_RE.match(value or "")
    if not m:
        return default
    return int(m.group(1)) * _SIZE_UNITS[(m.group(2) or "b").lower()]


@dataclass(frozen=True)
class Settings:
    step_timeout: float = DEFAULT_STEP_TIMEOUT_MS / 1000
    job_timeout: float = DEFAULT_JOB_TIMEOUT_MS / 1000
    kill_grace: float = DEFAULT_KILL_GRACE_MS / 1000
    max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES
    max_body_size: str = DEFAULT_MAX_BODY_SIZE
    workspace_root: Path = Path(tempfile.gettempdir())
    output_name: str = DEFAULT_OUTPUT_NAME
    host: str = "0.0.0.0"
    port: int = 3000
    log_level: str = "INFO"

    @property
    def max_body_bytes(self) -> int:
        return parse_size(self.max_body_size)

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> Settings:
        env = os.environ if env is None else env
        return cls(
            step_timeout=_int_env(env, "STEP_TIMEOUT_MS", DEFAULT_STEP_TIMEOUT_MS) / 1000,
            job_timeout=_int_env(env, "JOB_TIMEOUT_MS", DEFAULT_JOB_TIMEOUT_MS) / 1000,
            kill_grace=_int_env(env, "KILL_GRACE_MS", DEFAULT_KILL_GRACE_MS) / 1000,
            max_output_bytes=_int_env(env, "MAX_OUTPUT_BYTES", DEFAULT_MAX_OUTPUT_BYTES),
            max_body_size=env.get("MAX_BODY_SIZE") or DEFAULT_MAX_BODY_SIZE,
            workspace_root=Path(env.get("WORKSPACE_ROOT") or tempfile.gettempdir()),
            output_name=env.get("OUTPUT_NAME") or DEFAULT_OUTPUT_NAME,
            host=env.get("HOST") or "0.0.0.0",
            port=_int_env(env, "PORT", 3000),
            log_level=(env.get("LOG_LEVEL") or "INFO").upper(),
        )

    def to_dict(self) -> dict:
        return {
            "stepTimeoutMs": int(self.step_timeout * 1000),
            "jobTimeoutMs": int(self.job_timeout * 1000),
            "killGraceMs": int(self.kill_grace * 1000),
            "maxBodySize": self.max_body_size,
        }
