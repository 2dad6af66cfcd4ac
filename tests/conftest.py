import pytest

from dockserve import db, network
from dockserve.settings import Settings


@pytest.fixture(autouse=True)
def event_journal(tmp_path, monkeypatch):
    """Point the sqlite event journal at a per-test file."""
    monkeypatch.setattr(db, "settings", Settings(db_path=str(tmp_path / "events.db")))
    db.init_db()
    return db


@pytest.fixture(autouse=True)
def no_reachability_probe(monkeypatch):
    """Never dial container addresses from tests."""
    calls = []

    def fake_probe(ip, port, timeout_s=1.0):
        calls.append((ip, port))
        return True

    monkeypatch.setattr(network, "check_reachability", fake_probe)
    return calls
