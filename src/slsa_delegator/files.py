from __future__ import annotations

import hashlib
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Union

from slsa_delegator.errors import UnsafePath
from slsa_delegator.models import TrustedEnvironment

logger = logging.getLogger(__name__)

DEFAULT_TEMP_DIR = "/tmp"


def _allowed_dirs(env: TrustedEnvironment) -> List[Path]:
    out: List[Path] = []
    for raw in (env.workspace, DEFAULT_TEMP_DIR, env.runner_temp):
        if raw:
            out.append(Path(raw).resolve())
    return out


def resolve_path(path: Union[str, Path], env: TrustedEnvironment, *, write: bool) -> Path:
    """Resolve ``path`` and ensure it stays inside the sandbox.

    Relative paths are resolved against the workspace. The event payload file
    is the only location outside the allowed directories that may be read,
    and it may never be written.
    """
    candidate = Path(path)
    if not candidate.is_absolute() and env.workspace:
        candidate = Path(env.workspace) / candidate
    resolved = candidate.resolve()

    if env.event_path and resolved == Path(env.event_path).resolve():
        if write:
            raise UnsafePath(f"unsafe write path {resolved}")
        return resolved

    for allowed in _allowed_dirs(env):
        if resolved == allowed or allowed in resolved.parents:
            return resolved

    raise UnsafePath(f"unsafe path {resolved}")


def safe_read_bytes(path: Union[str, Path], env: TrustedEnvironment) -> bytes:
    return resolve_path(path, env, write=False).read_bytes()


def safe_file_sha256(path: Union[str, Path], env: TrustedEnvironment) -> str:
    return hashlib.sha256(safe_read_bytes(path, env)).hexdigest()


def read_event_payload(env: TrustedEnvironment) -> Dict[str, Any]:
    raw = safe_read_bytes(env.event_path, env)
    payload = json.loads(raw.decode("utf-8"))
    if not isinstance(payload, dict):
        raise ValueError("event payload must be a JSON object")
    return payload


def write_once(path: Union[str, Path], data: bytes, env: TrustedEnvironment) -> Path:
    target = resolve_path(path, env, write=True)
    # O_EXCL makes the call fail if the file already exists.
    fd = os.open(target, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, "wb") as f:
        f.write(data)
    logger.debug("wrote %d bytes to %s", len(data), target)
    return target


def write_json_once(
    path: Union[str, Path], payload: Dict[str, Any], env: TrustedEnvironment
) -> Path:
    data = json.dumps(payload, sort_keys=True).encode("utf-8")
    return write_once(path, data, env)
