"""Verify that the takeoff service configuration is intact.

The tool performs three checks:

1. It instantiates ``AppSettings`` from the given ``.env`` file, surfacing
   missing or malformed entries (``GEMINI_API_KEY``, ``SERVICE_ROLE_KEY``,
   ``CALLER_TOKEN_SECRET`` ...) before the API or the workers start failing.
2. It checks that the selected storage and queue backends have what they
   need: a table name for ``STORAGE_BACKEND=dynamodb`` and a queue URL for
   ``QUEUE_BACKEND=sqs``.
3. It can record and verify a checksum of the ``.env`` file so unexpected
   edits are detected.

Example usages::

    # Validate settings and record the expected checksum.
    python -m scripts.check_env record --env-file /srv/takeoff/.env \
        --hash-file /srv/takeoff/.env.sha256

    # Run later (e.g. from cron/systemd) to alert on drift.
    python -m scripts.check_env verify --env-file /srv/takeoff/.env \
        --hash-file /srv/takeoff/.env.sha256
"""

from __future__ import annotations

import argparse
import hashlib
import sys
from pathlib import Path
from typing import Callable

from pydantic import ValidationError

from takeoff.core.config import AppSettings, _load_env_file

EXIT_OK = 0
EXIT_VALIDATION_ERROR = 2
EXIT_CHECKSUM_ERROR = 3
EXIT_BACKEND_ERROR = 4
EXIT_RUNTIME_ERROR = 5


def _compute_hash(env_file: Path) -> str:
    """Return the SHA256 checksum for the target environment file."""
    return hashlib.sha256(env_file.read_bytes()).hexdigest()


def _load_settings(env_file: Path) -> AppSettings:
    """Load settings from the supplied env file, raising on missing values."""
    _load_env_file(str(env_file))
    return AppSettings()  # type: ignore[call-arg]


def backend_problems(settings: AppSettings) -> list[str]:
    """Describe backend selections that lack their required settings."""
    problems: list[str] = []
    if settings.storage_backend == "dynamodb" and not settings.aws.dynamodb_table_name:
        problems.append("STORAGE_BACKEND=dynamodb requires DYNAMODB_TABLE_NAME")
    if settings.queue_backend == "sqs" and not settings.aws.continuation_queue_url:
        problems.append("QUEUE_BACKEND=sqs requires CONTINUATION_QUEUE_URL")
    if settings.analysis.initial_max_tokens > settings.analysis.max_tokens_ceiling:
        problems.append("ANALYSIS_INITIAL_MAX_TOKENS exceeds ANALYSIS_MAX_TOKENS_CEILING")
    return problems


def _record_checksum(env_file: Path, hash_file: Path) -> int:
    """Persist the current checksum to ``hash_file``."""
    checksum = _compute_hash(env_file)
    hash_file.write_text(f"{checksum}\n", encoding="utf-8")
    print(f"Recorded checksum to {hash_file} ({checksum})")
    return EXIT_OK


def _verify_checksum(env_file: Path, hash_file: Path) -> int:
    """Compare the current checksum to the recorded baseline."""
    if not hash_file.exists():
        print(
            f"Expected checksum file {hash_file} is missing. "
            "Re-run with the 'record' command to establish a baseline.",
            file=sys.stderr,
        )
        return EXIT_RUNTIME_ERROR

    expected = hash_file.read_text(encoding="utf-8").strip()
    actual = _compute_hash(env_file)
    if expected == actual:
        print("Environment checksum OK.")
        return EXIT_OK

    print(
        "Environment checksum mismatch!\n"
        f"  expected: {expected}\n"
        f"  actual:   {actual}\n"
        "Investigate recent changes before restarting the API or workers.",
        file=sys.stderr,
    )
    return EXIT_CHECKSUM_ERROR


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Validate takeoff service settings and detect .env drift."
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    def add_env_argument(subparser: argparse.ArgumentParser) -> None:
        subparser.add_argument(
            "--env-file",
            default=".env",
            type=Path,
            help="Path to the environment file (default: .env in the repo root).",
        )

    for name, help_text, hash_help in (
        ("record", "Validate settings and store the checksum baseline.", "Where to write the baseline."),
        ("verify", "Validate settings and compare with the baseline.", "Previously recorded baseline."),
    ):
        subparser = subparsers.add_parser(name, help=help_text)
        add_env_argument(subparser)
        subparser.add_argument("--hash-file", required=True, type=Path, help=hash_help)

    check_parser = subparsers.add_parser(
        "check",
        help="Validate settings without touching any checksum files.",
    )
    add_env_argument(check_parser)
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    env_file: Path = args.env_file
    if not env_file.exists():
        print(
            f"Environment file {env_file} does not exist. "
            "Ensure the path is correct or create it before running this tool.",
            file=sys.stderr,
        )
        return EXIT_RUNTIME_ERROR

    try:
        settings = _load_settings(env_file)
    except ValidationError as exc:
        print(
            "Settings validation failed. Missing or invalid values detected:\n"
            f"{exc.json(indent=2)}",
            file=sys.stderr,
        )
        return EXIT_VALIDATION_ERROR
    except Exception as exc:  # pylint: disable=broad-except
        print(f"Unexpected error during validation: {exc}", file=sys.stderr)
        return EXIT_RUNTIME_ERROR

    problems = backend_problems(settings)
    if problems:
        print("Backend configuration incomplete:", file=sys.stderr)
        for problem in problems:
            print(f"  - {problem}", file=sys.stderr)
        return EXIT_BACKEND_ERROR

    command: str = args.command
    handlers: dict[str, Callable[[], int]] = {
        "record": lambda: _record_checksum(env_file, args.hash_file),
        "verify": lambda: _verify_checksum(env_file, args.hash_file),
        "check": lambda: EXIT_OK,
    }
    return handlers[command]()


if __name__ == "__main__":  # pragma: no cover - script entry point
    sys.exit(main())
