"""Tests for the environment drift detection script."""

from __future__ import annotations

from pathlib import Path

import pytest

from scripts import check_env

MANAGED_ENV_KEYS = [
    "GEMINI_API_KEY",
    "SERVICE_ROLE_KEY",
    "CALLER_TOKEN_SECRET",
    "STORAGE_BACKEND",
    "QUEUE_BACKEND",
    "DYNAMODB_TABLE_NAME",
    "CONTINUATION_QUEUE_URL",
]

VALID_ENV = {
    "GEMINI_API_KEY": "gemini-key",
    "SERVICE_ROLE_KEY": "service-key",
    "CALLER_TOKEN_SECRET": "caller-secret",
    "STORAGE_BACKEND": "sqlite",
    "QUEUE_BACKEND": "sqlite",
}


def _write_env(env_path: Path, **values: str) -> None:
    contents = "\n".join(f"{key}={value}" for key, value in values.items())
    env_path.write_text(contents + "\n", encoding="utf-8")


def _clear_managed_env(monkeypatch: pytest.MonkeyPatch) -> None:
    # setenv first so keys loaded from the env file are removed again on teardown.
    for key in MANAGED_ENV_KEYS:
        monkeypatch.setenv(key, "placeholder")
        monkeypatch.delenv(key)


@pytest.mark.parametrize("command", ["record", "verify", "check"])
def test_main_requires_existing_env_file(tmp_path: Path, command: str) -> None:
    env_file = tmp_path / ".missing-env"
    hash_file = tmp_path / ".env.sha256"

    argv = [command, "--env-file", str(env_file)]
    if command != "check":
        argv.extend(["--hash-file", str(hash_file)])

    exit_code = check_env.main(argv)
    assert exit_code == check_env.EXIT_RUNTIME_ERROR


def test_record_and_verify_detects_mismatched_checksum(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    env_file = tmp_path / ".env"
    hash_file = tmp_path / ".env.sha256"

    _clear_managed_env(monkeypatch)
    _write_env(env_file, **VALID_ENV)

    exit_code = check_env.main(
        ["record", "--env-file", str(env_file), "--hash-file", str(hash_file)]
    )
    assert exit_code == check_env.EXIT_OK
    assert hash_file.read_text(encoding="utf-8").strip()

    _clear_managed_env(monkeypatch)
    exit_code = check_env.main(
        ["verify", "--env-file", str(env_file), "--hash-file", str(hash_file)]
    )
    assert exit_code == check_env.EXIT_OK

    _write_env(env_file, **{**VALID_ENV, "CALLER_TOKEN_SECRET": "rotated"})

    _clear_managed_env(monkeypatch)
    exit_code = check_env.main(
        ["verify", "--env-file", str(env_file), "--hash-file", str(hash_file)]
    )
    assert exit_code == check_env.EXIT_CHECKSUM_ERROR


def test_verify_without_baseline_is_a_runtime_error(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    env_file = tmp_path / ".env"
    _clear_managed_env(monkeypatch)
    _write_env(env_file, **VALID_ENV)

    exit_code = check_env.main(
        ["verify", "--env-file", str(env_file), "--hash-file", str(tmp_path / "absent")]
    )
    assert exit_code == check_env.EXIT_RUNTIME_ERROR


def test_validation_failure_for_missing_required_values(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    env_file = tmp_path / ".env"

    _clear_managed_env(monkeypatch)
    values = dict(VALID_ENV)
    values.pop("CALLER_TOKEN_SECRET")
    _write_env(env_file, **values)

    exit_code = check_env.main(["check", "--env-file", str(env_file)])
    assert exit_code == check_env.EXIT_VALIDATION_ERROR


def test_dynamodb_backend_requires_table_name(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    env_file = tmp_path / ".env"

    _clear_managed_env(monkeypatch)
    _write_env(env_file, **{**VALID_ENV, "STORAGE_BACKEND": "dynamodb"})

    assert check_env.main(["check", "--env-file", str(env_file)]) == check_env.EXIT_BACKEND_ERROR

    _clear_managed_env(monkeypatch)
    _write_env(
        env_file,
        **{**VALID_ENV, "STORAGE_BACKEND": "dynamodb", "DYNAMODB_TABLE_NAME": "takeoff"},
    )
    assert check_env.main(["check", "--env-file", str(env_file)]) == check_env.EXIT_OK
