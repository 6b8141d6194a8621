from datetime import datetime
from sqlalchemy import text


async def ensure_migrations_table(conn):
    await conn.execute(text(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            name TEXT PRIMARY KEY,
            applied_at TEXT DEFAULT (datetime('now'))
        )
        """
    ))


async def has_migration(conn, name: str) -> bool:
    result = await conn.execute(text("SELECT 1 FROM schema_migrations WHERE name = :name"), {"name": name})
    return result.first() is not None


async def mark_migration(conn, name: str):
    await conn.execute(text("INSERT INTO schema_migrations(name, applied_at) VALUES (:name, :applied_at)"), {
        "name": name,
        "applied_at": datetime.utcnow().isoformat()
    })


async def add_provider_reference_index(conn):
    # a provider checkout session or transfer may back at most one transaction
    await conn.execute(text(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS ux_transactions_provider_reference
        ON transactions(reference_type, reference_id)
        WHERE reference_type IN ('stripe_checkout', 'stripe_transfer')
        """
    ))


MIGRATIONS = [
    ("202501_add_provider_reference_index", add_provider_reference_index),
]


async def run_migrations(conn):
    await ensure_migrations_table(conn)
    for name, handler in MIGRATIONS:
        if await has_migration(conn, name):
            continue
        await handler(conn)
        await mark_migration(conn, name)
