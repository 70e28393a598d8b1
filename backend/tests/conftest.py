"""
backend/tests/conftest.py

Purpose:
    Shared pytest bootstrap: backend import path and an in-memory database
    wired into betmenow.database for service-level tests.
"""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

_THIS_FILE = Path(__file__).resolve()
_BACKEND_DIR = _THIS_FILE.parents[1]
_TESTS_DIR = _THIS_FILE.parent

for candidate in (str(_BACKEND_DIR), str(_TESTS_DIR)):
    if candidate not in sys.path:
        sys.path.insert(0, candidate)

from fake_mongo import FakeMongo  # noqa: E402


@pytest.fixture
def fake_db(monkeypatch):
    import betmenow.database as _db

    db = FakeMongo()
    monkeypatch.setattr(_db, "db", db, raising=False)
    monkeypatch.setattr(_db, "transaction", db.transaction)
    return db
