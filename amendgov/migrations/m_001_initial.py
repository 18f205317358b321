"""Migration 001: document table for every governance collection."""

from __future__ import annotations

import aiosqlite


async def upgrade(db: aiosqlite.Connection) -> None:
    await db.execute("""
        CREATE TABLE IF NOT EXISTS documents (
            collection TEXT NOT NULL,
            id TEXT NOT NULL,
            body TEXT NOT NULL,
            seq INTEGER NOT NULL,
            PRIMARY KEY (collection, id)
        )
    """)
    await db.execute(
        "CREATE INDEX IF NOT EXISTS idx_documents_collection "
        "ON documents (collection, seq)"
    )
