#!/usr/bin/env python3
"""Create the workflow tables (optional) and seed the Statuses lookup rows."""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

from sqlalchemy.engine import Engine

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from db.base import Base  # noqa: E402
from db.engine import build_engine, build_session_factory  # noqa: E402
from models import workflow_models  # noqa: E402,F401
from services.status_catalog import CATALOG  # noqa: E402


def seed_statuses(engine: Engine, create_schema: bool = False) -> int:
    if create_schema:
        Base.metadata.create_all(engine)
    session = build_session_factory(engine)()
    try:
        return CATALOG.seed(session)
    finally:
        session.close()


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Seed workflow status lookup rows.")
    parser.add_argument("--db-url", default=os.environ.get("WORKFLOW_DB_URL", ""))
    parser.add_argument(
        "--create-schema",
        action="store_true",
        help="Create missing workflow tables before seeding.",
    )
    return parser


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    db_url = (args.db_url or "").strip()
    if not db_url:
        parser.error("Missing DB URL. Set WORKFLOW_DB_URL or pass --db-url.")

    inserted = seed_statuses(build_engine(db_url), create_schema=args.create_schema)
    print(f"Seeded statuses inserted={inserted} total={len(CATALOG)}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
