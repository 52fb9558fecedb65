import itertools
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from taskledger.models import AssignmentStatus
from taskledger.schema import Assignment, Product, User
from taskledger.storage import Storage

NOW = datetime(2026, 3, 2, 10, 30, tzinfo=timezone.utc)
TODAY = NOW.date()

_names = itertools.count(1)


@pytest.fixture
def storage():
    storage = Storage.in_memory()
    yield storage
    storage.engine.dispose()


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def make_user(storage):
    """Insert a user whose daily progress already belongs to TODAY."""
    def _make(balance="1000.00", level=1, total_tasks_completed=1, **fields):
        fields.setdefault("username", f"user{next(_names)}")
        fields.setdefault("last_task_reset_date", TODAY)
        with storage.transaction() as session:
            user = User(
                wallet_balance=Decimal(balance),
                level=level,
                total_tasks_completed=total_tasks_completed,
                **fields,
            )
            session.add(user)
            session.flush()
            return user.id
    return _make


@pytest.fixture
def make_product(storage):
    def _make(price="100.00", **fields):
        fields.setdefault("name", f"Product {next(_names)}")
        with storage.transaction() as session:
            product = Product(level1_price=Decimal(price), **fields)
            session.add(product)
            session.flush()
            return product.id
    return _make


@pytest.fixture
def make_assignment(storage):
    def _make(user_id, product_id, status=AssignmentStatus.PENDING, **fields):
        fields.setdefault("assigned_date", TODAY)
        with storage.transaction() as session:
            assignment = Assignment(user_id=user_id, product_id=product_id, status=status, **fields)
            session.add(assignment)
            session.flush()
            return assignment.id
    return _make


@pytest.fixture
def reload(storage):
    """Fetch a fresh, detached copy of a row."""
    def _reload(model, pk):
        with storage.transaction() as session:
            return session.get(model, pk)
    return _reload
