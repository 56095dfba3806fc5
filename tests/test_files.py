import json
import stat
from pathlib import Path

import pytest

from slsa_delegator.errors import UnsafePath
from slsa_delegator.files import (
    read_event_payload,
    resolve_path,
    safe_file_sha256,
    write_json_once,
    write_once,
)
from slsa_delegator.models import TrustedEnvironment


def test_resolve_path_is_relative_to_workspace(trusted_env: TrustedEnvironment) -> None:
    resolved = resolve_path("out/predicate.json", trusted_env, write=True)
    assert resolved == Path(trusted_env.workspace).resolve() / "out" / "predicate.json"


def test_resolve_path_rejects_escape(trusted_env: TrustedEnvironment) -> None:
    with pytest.raises(UnsafePath):
        resolve_path("../" * 32 + "etc/cron.d/job", trusted_env, write=True)
    with pytest.raises(UnsafePath):
        resolve_path("/etc/passwd", trusted_env, write=False)


def test_resolve_path_allows_runner_temp(trusted_env: TrustedEnvironment) -> None:
    target = Path(trusted_env.runner_temp) / "token.txt"
    assert resolve_path(target, trusted_env, write=True) == target.resolve()


def test_event_payload_is_read_only(trusted_env: TrustedEnvironment) -> None:
    assert read_event_payload(trusted_env)["ref"] == "refs/heads/main"
    assert len(safe_file_sha256(trusted_env.event_path, trusted_env)) == 64
    with pytest.raises(UnsafePath):
        write_once(trusted_env.event_path, b"{}", trusted_env)


def test_write_once_refuses_existing_file(trusted_env: TrustedEnvironment) -> None:
    path = write_once("predicate.json", b"first", trusted_env)
    assert path.read_bytes() == b"first"
    assert stat.S_IMODE(path.stat().st_mode) == 0o600
    with pytest.raises(FileExistsError):
        write_once("predicate.json", b"second", trusted_env)
    assert path.read_bytes() == b"first"


def test_write_json_once_sorts_keys(trusted_env: TrustedEnvironment) -> None:
    path = write_json_once("out.json", {"b": 1, "a": 2}, trusted_env)
    assert path.read_text(encoding="utf-8") == json.dumps({"a": 2, "b": 1})
