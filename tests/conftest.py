import pytest

import database
import processor
import suggestions


@pytest.fixture(autouse=True)
def sqlite_db(tmp_path, monkeypatch):
    """Fresh SQLite database per test."""
    monkeypatch.setattr(database, "DB_NAME", str(tmp_path / "shifts.db"))
    monkeypatch.setattr(database, "IS_POSTGRES", False)
    monkeypatch.setattr(processor, "IS_POSTGRES", False)
    monkeypatch.setattr(suggestions, "IS_POSTGRES", False)
    database.init_db()
    return database.DB_NAME
