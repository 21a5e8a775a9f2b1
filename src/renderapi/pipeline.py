# pipeline.py
from __future__ import annotations

import re
from typing import Any, Iterable, List, Optional

from .errors import EmptyCommand, ValidationError
from .model import Step, StepKind

# Upstream producers disagree on the field name; `cmd` wins when both exist.
COMMAND_KEYS = ("cmd", "command")

# "WRITE_BINARY_TO:/some/path/file.ext" on a single line.
WRITE_BINARY_RE = re.compile(r"WRITE_BINARY_TO:(.+)")


def resolve_command(entry: Any) -> Optional[str]:
    """Plain strings are the command; mappings carry it under COMMAND_KEYS."""
    if isinstance(entry, str):
        return entry
    if isinstance(entry, dict):
        for key in COMMAND_KEYS:
            value = entry.get(key)
            if isinstance(value, str):
                return value
    return None


def resolve_step(index: int, entry: Any) -> Step:
    command = resolve_command(entry)
    if command is None:
        return Step(index=index, raw=entry, command=None, kind=StepKind.MALFORMED)

    m = WRITE_BINARY_RE.fullmatch(command)
    if m:
        return Step(
            index=index,
            raw=entry,
            command=command,
            kind=StepKind.BINARY,
            target=m.group(1).strip(),
        )
    return Step(index=index, raw=entry, command=command)


def parse_pipeline(raw: Any) -> List[Step]:
    """
    Resolve every entry of a request pipeline.

    Raises:
        ValidationError: pipeline missing, not a list, or empty.
    """
    if raw is None or not isinstance(raw, (list, tuple)):
        raise ValidationError("Request body must include a 'pipeline' array")
    if len(raw) == 0:
        raise ValidationError("Pipeline array must contain at least one step")
    return [resolve_step(i, entry) for i, entry in enumerate(raw)]


def requires_payload(steps: Iterable[Step]) -> bool:
    return any(s.kind is StepKind.BINARY for s in steps)


def validate_command(step: Step) -> str:
    """
    Final gate before a command reaches the shell.

    Non-string values are refused outright so that structured input can never
    be coerced into a command line.
    """
    command = step.command
    if not isinstance(command, str):
        raise EmptyCommand(
            f"Step {step.number}: resolved command is not a string, refusing to execute",
            step=step.number,
        )
    if not command.strip():
        raise EmptyCommand(f"Step {step.number}: command is empty", step=step.number)
    return command
