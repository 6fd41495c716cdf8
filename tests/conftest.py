"""Shared fixtures: a temp-file user store and the registry built on it."""

import pytest
import structlog

from servers.user_mcp.server import build_registry
from servers.user_mcp.store import UserStore


@pytest.fixture(autouse=True)
def _reset_structlog():
    # configure_logging binds structlog to the sys.stderr of the moment,
    # which pytest's capture closes after the test; reset global config.
    yield
    structlog.reset_defaults()


@pytest.fixture
def data_path(tmp_path):
    return tmp_path / "users.json"


@pytest.fixture
def store(data_path):
    return UserStore(data_path)


@pytest.fixture
def registry(store):
    return build_registry(store)
