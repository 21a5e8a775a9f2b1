# step_workflows/binary.py
from __future__ import annotations

import asyncio
import base64
import binascii
from pathlib import Path
from typing import Any

from ..errors import BinaryInjectionError, MissingPayload

USAGE_HINT = 'send: { "pipeline": [...], "binaryData": "<base64>" }'


# ---------------------------------------------------------------------
# Payload decoding
# ---------------------------------------------------------------------

def decode_payload(data: Any) -> bytes:
    """
    Decode the request's base64 payload.

    Whitespace (line breaks from wrapped encoders) is stripped first. Any
    other character outside the standard alphabet, or bad padding, is an
    error rather than silently dropped.
    """
    if not isinstance(data, str) or not data.strip():
        raise MissingPayload(
            f"WRITE_BINARY_TO requires binaryData (base64 string). In your client, {USAGE_HINT}"
        )
    try:
        return base64.b64decode("".join(data.split()), validate=True)
    except (binascii.Error, ValueError) as e:
        raise BinaryInjectionError(f"binaryData is not valid base64: {e}") from e


# ---------------------------------------------------------------------
# Writing
# ---------------------------------------------------------------------

def _write(path: Path, payload: bytes) -> int:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("wb") as f:
        return f.write(payload)


async def write_binary(target: str, payload: bytes | None, base: Path | None = None) -> int:
    """
    Materialize `payload` at `target` and return the number of bytes written.

    Relative targets resolve against `base` (the job workspace). Absolute
    targets are honoured as-is, so a pipeline may write into mounted
    locations outside its workspace.
    """
    if payload is None:
        raise MissingPayload(f"WRITE_BINARY_TO requires binaryData. In your client, {USAGE_HINT}")
    if not target:
        raise BinaryInjectionError("WRITE_BINARY_TO needs a target path")

    path = Path(target)
    if not path.is_absolute() and base is not None:
        path = base / path

    try:
        return await asyncio.to_thread(_write, path, payload)
    except OSError as e:
        raise BinaryInjectionError(
            f"Could not write binary data: {e.strerror or e}",
            details={"targetPath": str(path)},
        ) from e
