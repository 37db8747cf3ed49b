"""Shared test fixtures for hardware tester tests."""

import os
import sys

# Add project root to path so tests can import dispatch, protocol, server, etc.
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest

import config
from mock_uut import MockUut
from result_store import ResultStore
from uut_client import UutSession


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Point configuration at a throwaway directory and ignore the user's environment."""
    monkeypatch.setenv("HWTEST_CONFIG", str(tmp_path / "missing.json"))
    for key in config.DEFAULTS:
        monkeypatch.delenv(f"HWTEST_{key.upper()}", raising=False)
    monkeypatch.setenv("HWTEST_DB_PATH", str(tmp_path / "records.db"))
    config.reset_cache()
    yield
    config.reset_cache()


@pytest.fixture
def store(tmp_path):
    """Fresh ResultStore in a temporary directory."""
    return ResultStore(str(tmp_path / "store" / "records.db"))


@pytest.fixture
def uut():
    """Mock UUT answering on an ephemeral localhost port."""
    mock = MockUut("127.0.0.1", 0).start()
    yield mock
    mock.stop()


@pytest.fixture
def session_factory(uut):
    """Session factory that talks to the mock UUT."""
    host, port = uut.address
    return lambda: UutSession(host, port, poll_interval=0.05, bind_addr=("127.0.0.1", 0))
