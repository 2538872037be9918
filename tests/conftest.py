"""Shared fixtures for split-ledger tests."""

import pytest

from split_ledger.config import Settings
from split_ledger.db import Database
from split_ledger.models import Group
from split_ledger.service import LedgerService


@pytest.fixture
def settings(tmp_path):
    """Create test settings pointing at a temporary database."""
    return Settings(database_path=tmp_path / "test.db", store_timeout_seconds=2.0)


@pytest.fixture
def db(settings):
    """Create a temporary database."""
    db = Database(settings.database_path, timeout=settings.store_timeout_seconds)
    yield db
    db.close()


@pytest.fixture
def service(settings, db):
    """Create a LedgerService over the temporary database."""
    return LedgerService(settings, db)


@pytest.fixture
def trip(service) -> Group:
    """A three-member group owned by alice."""
    return service.create_group("Ski trip", "alice", ["bob", "carol"])
