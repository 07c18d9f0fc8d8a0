#!/usr/bin/env python3
"""Alembic bootstrap for databases created by seed_data.py (create_all).

A database built with create_all has every model table but no
alembic_version row. Such a database is stamped at the initial revision so
later upgrades apply normally. A database holding only some of the tables
is left alone: it was not made by create_all and needs a manual look.
"""

from __future__ import annotations

import os
import subprocess

from sqlalchemy import inspect

from cdmo_records import models  # noqa: F401  (registers tables on Base.metadata)
from cdmo_records.database import Base, Database


BASELINE_REVISION = os.getenv("ALEMBIC_BASELINE_REVISION", "001")


def baseline_plan(database: Database) -> tuple[str, list[str]]:
    """Return ("stamp" | "skip" | "partial", missing model tables)."""
    existing = set(inspect(database.engine).get_table_names())
    if "alembic_version" in existing:
        return "skip", []

    expected = set(Base.metadata.tables)
    present = expected & existing
    if not present:
        return "skip", []
    missing = sorted(expected - present)
    return ("partial" if missing else "stamp"), missing


def main() -> int:
    database = Database.from_settings()
    try:
        action, missing = baseline_plan(database)
    finally:
        database.dispose()

    if action == "partial":
        print(f"Schema is incomplete, refusing to stamp {BASELINE_REVISION}. Missing tables: {', '.join(missing)}")
        return 1
    if action == "stamp":
        print(f"Schema created without alembic_version. Stamping baseline: {BASELINE_REVISION}")
        subprocess.run(["alembic", "stamp", BASELINE_REVISION], check=True)
    else:
        print("Alembic bootstrap check: no baseline stamp required")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
