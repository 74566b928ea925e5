#!/usr/bin/env python3
"""Utility to verify database connectivity and run pending migrations."""
from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import Sequence

import subscriptions


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Verify subscriber database connectivity")
    parser.add_argument(
        "--path",
        type=Path,
        default=None,
        help="Optional override for the local SQLite database path",
    )
    return parser.parse_args(argv)


def verify_or_create(*, path: Path | None = None, logger: logging.Logger | None = None) -> dict:
    logger = logger or logging.getLogger("migrate_db")
    backend_label = "PostgreSQL" if subscriptions.is_postgres_backend() else "SQLite"
    logger.info("Detected backend: %s", subscriptions.describe_backend(path=path))
    logger.info("Verifying subscribers schema on %s", backend_label)

    subscriptions.ensure_database_ready(path=path)
    columns = subscriptions.subscriber_columns(path=path)
    expected = subscriptions.expected_subscriber_columns()
    missing = [column for column in expected if column not in columns]
    if missing:
        raise RuntimeError(
            f"Missing subscribers columns after migration: {', '.join(sorted(missing))}"
        )

    logger.info("✅ subscribers schema verified/migrated successfully")
    return columns


def main(argv: Sequence[str] | None = None) -> dict:
    args = parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(message)s")
    logger = logging.getLogger("migrate_db")

    verify_or_create(path=args.path, logger=logger)
    total = subscriptions.count_subscribers(path=args.path)
    active = subscriptions.count_subscribers(path=args.path, only_active=True)
    eligible = len(subscriptions.load_eligible_subscribers(args.path))
    logger.info("Subscriber rows present: %s (subscribed=%s, with city=%s)", total, active, eligible)
    return {"total": total, "subscribed": active, "eligible": eligible}


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    main()
