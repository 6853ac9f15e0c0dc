#!/usr/bin/env python3
"""Delete expired refresh tokens.

Meant for cron or a systemd timer when the in-process sweep
(REFRESH_TOKEN_SWEEP_INTERVAL_SECONDS) is disabled.

Usage:
    DATABASE_URL=postgresql://... python scripts/cleanup_refresh_tokens.py

    # Override the database on the command line:
    python scripts/cleanup_refresh_tokens.py --database-url postgresql://...

Environment Variables:
    DATABASE_URL: PostgreSQL connection string
    JWT_SECRET, STORJ_ENCRYPTION_KEY: required by the settings loader
    REDIS_URL: ignored; the sweep never touches rate limits
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def cleanup_expired_refresh_tokens() -> int:
    """Run one sweep and return the number of rows removed."""
    # Import here so env overrides from main() are seen by the settings loader
    from wayne.config import get_settings
    from wayne.service.runtime import Runtime

    settings = get_settings().model_copy(update={"redis_url": None})
    runtime = Runtime(settings)
    try:
        return runtime.tokens.cleanup_expired()
    finally:
        runtime.store.close()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Delete expired Wayne refresh tokens",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--database-url",
        default=None,
        help="PostgreSQL connection string (defaults to DATABASE_URL)",
    )
    args = parser.parse_args(argv)

    if args.database_url:
        os.environ["DATABASE_URL"] = args.database_url

    try:
        removed = cleanup_expired_refresh_tokens()
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(f"Removed {removed} expired refresh token(s)")
    return 0


if __name__ == "__main__":
    sys.exit(main())
