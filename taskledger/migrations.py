"""
Versioned schema migrations.

Run once per deploy, not on application start-up::

    python -m taskledger.migrations            # apply pending migrations
    python -m taskledger.migrations --dry-run  # list what would run

Applied versions are recorded in ``schema_migrations``; a migration runs at
most once per database.
"""

import argparse
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List

from sqlalchemy import Column, DateTime, Integer, MetaData, String, Table, create_engine, select
from sqlalchemy.engine import Connection, Engine

from .commission import DEFAULT_COMMISSION_RATE
from .schema import Base, CommissionRate, LEVELS

logger = logging.getLogger(__name__)

_tracking = MetaData()
schema_migrations = Table(
    "schema_migrations",
    _tracking,
    Column("version", Integer, primary_key=True, autoincrement=False),
    Column("description", String(255), nullable=False),
    Column("applied_at", DateTime(timezone=True), nullable=False),
)


@dataclass(frozen=True)
class Migration:
    version: int
    description: str
    upgrade: Callable[[Connection], None]


def _create_tables(*names: str) -> Callable[[Connection], None]:
    def upgrade(conn: Connection) -> None:
        for name in names:
            Base.metadata.tables[name].create(conn, checkfirst=True)
    return upgrade


def _seed_commission_rates(conn: Connection) -> None:
    table = CommissionRate.__table__
    existing = set(conn.execute(select(table.c.level)).scalars())
    for level in LEVELS:
        if level not in existing:
            conn.execute(table.insert().values(level=level, rate=DEFAULT_COMMISSION_RATE))


MIGRATIONS: List[Migration] = [
    Migration(1, "core ledger tables", _create_tables(
        "users", "products", "commission_rates", "user_products", "balance_events",
    )),
    Migration(2, "deposits and notifications", _create_tables("deposits", "notifications")),
    Migration(3, "withdrawal requests", _create_tables("withdrawal_requests")),
    Migration(4, "default commission rates", _seed_commission_rates),
]


def applied_versions(engine: Engine) -> set:
    with engine.begin() as conn:
        _tracking.create_all(conn)
        return set(conn.execute(select(schema_migrations.c.version)).scalars())


def run_migrations(engine: Engine, dry_run: bool = False) -> List[int]:
    """Apply pending migrations in version order. Returns the versions handled."""
    applied = applied_versions(engine)
    pending = sorted((m for m in MIGRATIONS if m.version not in applied), key=lambda m: m.version)

    if not pending:
        logger.info("Database schema is up to date")
        return []

    for migration in pending:
        if dry_run:
            logger.info(f"Pending migration {migration.version}: {migration.description}")
            continue
        with engine.begin() as conn:
            migration.upgrade(conn)
            conn.execute(schema_migrations.insert().values(
                version=migration.version,
                description=migration.description,
                applied_at=datetime.now(timezone.utc),
            ))
        logger.info(f"Applied migration {migration.version}: {migration.description}")

    return [m.version for m in pending]


def main(argv=None) -> None:
    from .config import settings

    parser = argparse.ArgumentParser(description="Apply taskledger schema migrations")
    parser.add_argument("--database-url", default=settings.DATABASE_URL)
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    engine = create_engine(args.database_url)
    run_migrations(engine, dry_run=args.dry_run)


if __name__ == "__main__":
    main()
