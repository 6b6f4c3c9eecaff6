import pytest

import agebridge.db.pool as pool_module
from tests.fakes import FakeDatabase


@pytest.fixture
def fake_db(monkeypatch):
    db = FakeDatabase()
    monkeypatch.setattr(pool_module, "AsyncConnectionPool", db.pool_factory)
    return db
