"""
Pytest configuration and shared fixtures for Kinsync tests.

Test Categories:
- unit: Fast tests against a temporary SQLite database
- integration: Two complete application stacks wired through httpx.MockTransport

Run categories:
- pytest -m unit              # Fast unit tests only
- pytest -m integration       # Two-party flows
- pytest                      # All tests
"""
import pytest
from cryptography.fernet import Fernet

from tests.fixtures.sync_stack import PeerRouter, build_stack
from tests.reset_singletons import reset_sync_singletons


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: Fast unit tests")
    config.addinivalue_line("markers", "integration: Two-party sync tests (no server required)")


@pytest.fixture(autouse=True)
def reset_singletons_after_test():
    """Keep singletons from pointing at another test's database."""
    reset_sync_singletons()
    yield
    reset_sync_singletons()


@pytest.fixture
def sync_settings(tmp_path, monkeypatch):
    """
    Point the global settings at a temporary data directory.

    Everything reached through the singleton getters (and the API) then
    uses tmp_path/sync.db with a throwaway encryption key.
    """
    from config.settings import settings

    monkeypatch.setattr(settings, "data_path", tmp_path)
    monkeypatch.setattr(settings, "secret_encryption_key", Fernet.generate_key().decode())
    monkeypatch.setattr(settings, "remote_base_url", "")
    monkeypatch.setattr(settings, "default_user_id", "local-user")
    return settings


@pytest.fixture
def db_path(tmp_path):
    """Path of an isolated database file for store-level tests."""
    return str(tmp_path / "sync.db")


@pytest.fixture
def peer_router():
    return PeerRouter()


@pytest.fixture
def stacks(tmp_path, peer_router):
    """Two applications ("temerio" and "cherishly") that can reach each other."""
    transport = peer_router.transport()
    temerio = build_stack("temerio", tmp_path, transport=transport)
    cherishly = build_stack("cherishly", tmp_path, transport=transport)
    peer_router.register(temerio)
    peer_router.register(cherishly)
    return temerio, cherishly
