#!/usr/bin/env python3
"""
Global pytest configuration and fixtures.

This module provides:
- Platform-specific test skipping (macOS/EventKit tests)
- An isolated working directory and owner environment per test
- Shared fakes for the ledger and the device store
"""

import os
import platform
import sys
from datetime import datetime, timezone

import pytest

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ledger_sync.core import paths  # noqa: E402
from tests.fakes import FakeClock, FakeLedgerGateway, FakeRemindersGateway  # noqa: E402

HAS_EVENTKIT = False

try:
    if platform.system() == "Darwin":
        import objc  # noqa: F401
        import EventKit  # noqa: F401
        HAS_EVENTKIT = True
except ImportError:
    pass


def pytest_configure(config):
    """Configure pytest environment."""
    config.addinivalue_line("markers", "macos: test requires macOS")
    config.addinivalue_line("markers", "eventkit: test requires EventKit framework")
    config.addinivalue_line("markers", "network: test requires network access")


def pytest_collection_modifyitems(config, items):
    """Skip macOS/EventKit tests off Darwin and network tests unless asked for."""
    skip_macos = pytest.mark.skip(reason="macOS/EventKit tests require Darwin platform")
    skip_eventkit = pytest.mark.skip(reason="Test requires EventKit framework")
    skip_network = pytest.mark.skip(reason="Set LEDGER_SYNC_NETWORK_TESTS=1 to run network tests")

    for item in items:
        if "macos" in item.keywords and platform.system() != "Darwin":
            item.add_marker(skip_macos)
        if "eventkit" in item.keywords and not HAS_EVENTKIT:
            item.add_marker(skip_eventkit)
        if "network" in item.keywords and not os.environ.get("LEDGER_SYNC_NETWORK_TESTS"):
            item.add_marker(skip_network)


@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    """Point the working directory at a temp dir and clear the owner override."""
    home = tmp_path / "ledger-sync-home"
    monkeypatch.setenv("LEDGER_SYNC_HOME", str(home))
    monkeypatch.delenv("LEDGER_SYNC_OWNER", raising=False)
    monkeypatch.setattr(paths, "_path_manager", None)
    yield home
    paths._path_manager = None


@pytest.fixture
def clock():
    return FakeClock(datetime(2025, 3, 10, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def ledger_gateway(clock):
    return FakeLedgerGateway(clock=clock)


@pytest.fixture
def device_gateway(clock):
    return FakeRemindersGateway(clock=clock)
