import pytest

from sqlalchemy import create_engine, inspect, select
from sqlalchemy.pool import StaticPool

from taskledger.commission import DEFAULT_COMMISSION_RATE
from taskledger.migrations import MIGRATIONS, applied_versions, main, run_migrations
from taskledger.schema import CommissionRate


@pytest.fixture
def engine():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    yield engine
    engine.dispose()


class TestMigrations:
    """Tests for the versioned migration runner."""

    def test_fresh_database_applies_everything(self, engine):
        applied = run_migrations(engine)

        assert applied == [m.version for m in MIGRATIONS]
        tables = set(inspect(engine).get_table_names())
        assert {"users", "products", "user_products", "balance_events", "commission_rates",
                "deposits", "notifications", "withdrawal_requests", "schema_migrations"} <= tables

    def test_second_run_is_a_no_op(self, engine):
        run_migrations(engine)

        assert run_migrations(engine) == []
        assert applied_versions(engine) == {m.version for m in MIGRATIONS}

    def test_dry_run_changes_nothing(self, engine):
        pending = run_migrations(engine, dry_run=True)

        assert pending == [m.version for m in MIGRATIONS]
        assert applied_versions(engine) == set()
        assert "users" not in inspect(engine).get_table_names()

    def test_default_rates_seeded(self, engine):
        run_migrations(engine)

        with engine.connect() as conn:
            rows = conn.execute(
                select(CommissionRate.level, CommissionRate.rate).order_by(CommissionRate.level)
            ).all()
        assert [level for level, _ in rows] == [1, 2, 3, 4, 5]
        assert all(rate == DEFAULT_COMMISSION_RATE for _, rate in rows)

    def test_cli_entry_point(self, tmp_path):
        url = f"sqlite:///{tmp_path / 'cli.db'}"

        main(["--database-url", url])

        assert applied_versions(create_engine(url)) == {m.version for m in MIGRATIONS}
