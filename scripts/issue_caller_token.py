"""Issue a signed caller token, optionally granting the user admin rights.

Example::

    python -m scripts.issue_caller_token user-123 --admin --ttl 86400
"""

from __future__ import annotations

import argparse
import sys
from datetime import datetime, timezone

from takeoff.core.config import get_settings
from takeoff.dependencies.clients import get_caller_token_encoder, get_record_store


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Issue a caller token for the takeoff API.")
    parser.add_argument("user_id", help="Identifier embedded in the token.")
    parser.add_argument(
        "--ttl",
        type=int,
        default=3600,
        help="Token lifetime in seconds (default: 3600).",
    )
    parser.add_argument(
        "--admin",
        action="store_true",
        help="Store an admin profile for the user so it may start takeoff jobs.",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    get_settings()

    if args.admin:
        get_record_store().put_item(
            {
                "pk": f"user#{args.user_id}",
                "sk": "profile",
                "user_id": args.user_id,
                "is_admin": True,
                "updated_at": datetime.now(timezone.utc).isoformat(),
            }
        )
        print(f"Granted admin rights to {args.user_id}", file=sys.stderr)

    print(get_caller_token_encoder().issue(args.user_id, ttl_seconds=args.ttl))
    return 0


if __name__ == "__main__":  # pragma: no cover - script entry point
    sys.exit(main())
