"""Migration runner — applies pending migrations on startup.

Migrations are Python modules in the `amendgov/migrations/` directory,
named `m_NNN_description.py` where NNN is a zero-padded version number.
Each must define an `async def upgrade(db: aiosqlite.Connection)` function.
"""

from __future__ import annotations

import importlib
import logging
from pathlib import Path

import aiosqlite

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent
MIGRATION_PREFIX = "m_"


def _discover() -> list[tuple[int, str]]:
    found = []
    for mf in sorted(MIGRATIONS_DIR.glob(f"{MIGRATION_PREFIX}*.py")):
        # m_001_description.py -> 1
        parts = mf.stem.split("_")
        if len(parts) < 2:
            continue
        try:
            found.append((int(parts[1]), mf.stem))
        except ValueError:
            continue
    return found


async def get_schema_version(db: aiosqlite.Connection) -> int:
    await db.execute(
        "CREATE TABLE IF NOT EXISTS schema_version "
        "(version INTEGER PRIMARY KEY, applied_at TEXT DEFAULT CURRENT_TIMESTAMP)"
    )
    cursor = await db.execute("SELECT MAX(version) FROM schema_version")
    row = await cursor.fetchone()
    return row[0] if row[0] is not None else 0


async def apply_migrations(db_path: str) -> list[int]:
    """Apply all pending migrations. Returns list of applied version numbers."""
    applied: list[int] = []
    async with aiosqlite.connect(db_path) as db:
        current = await get_schema_version(db)
        await db.commit()

        for version, stem in _discover():
            if version <= current:
                continue
            module = importlib.import_module(f"amendgov.migrations.{stem}")
            await module.upgrade(db)
            await db.execute(
                "INSERT INTO schema_version (version) VALUES (?)", (version,),
            )
            await db.commit()
            logger.info("Applied migration %03d (%s)", version, stem)
            applied.append(version)

    return applied
