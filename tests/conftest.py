"""
Shared pytest fixtures.

- Connection fixtures (source, target, settings)
- State fixtures (store)
- Fake server and runner fixtures (pg, runner)
"""

import pytest

from pg2pg import db
from pg2pg.config import PGConnection, MigrationSettings
from pg2pg.state import StateStore

from fakes import FakePG, FakeRunner, SOURCE_HOST, TARGET_HOST


@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    """Keep default dump/state/report locations out of the real home directory."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    return home


# ============================================================================
# Connections and settings
# ============================================================================

@pytest.fixture
def source():
    return PGConnection(SOURCE_HOST, 5432, "postgres", "source-secret", "postgres")


@pytest.fixture
def target():
    return PGConnection(TARGET_HOST, 5433, "migrator", "target-secret", "postgres")


@pytest.fixture
def settings(tmp_path, source, target):
    return MigrationSettings(
        source=source,
        target=target,
        jobs=4,
        max_parallel=4,
        dump_root=tmp_path / "dumps",
        state_dir=tmp_path / "state",
        verify_dir=tmp_path / "verify",
        log_dir=tmp_path / "logs",
        report_path=tmp_path / "report.html",
    )


@pytest.fixture
def store(settings):
    return StateStore(settings.state_dir)


# ============================================================================
# Fake servers and utilities
# ============================================================================

@pytest.fixture
def pg(monkeypatch):
    """Both servers in memory, wired in place of the psycopg2 helpers."""
    fake = FakePG()
    monkeypatch.setattr(db, "connect", fake.connect)
    monkeypatch.setattr(db, "fetch_all", fake.fetch_all)
    monkeypatch.setattr(db, "execute", fake.execute)
    return fake


@pytest.fixture
def runner(pg):
    return FakeRunner(pg)
