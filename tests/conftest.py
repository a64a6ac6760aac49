"""Shared fixtures for dagci tests."""

import io
import logging
from pathlib import Path

import pytest

from dagci.cache import CacheStore
from dagci.ui.console import Console, set_console
from dagci.workspace import Workspace

REPO_ROOT = Path(__file__).resolve().parent.parent


@pytest.fixture(autouse=True)
def _detach_log_handlers():
    """CliRunner streams close after each invoke; drop handlers bound to them."""
    yield
    root = logging.getLogger()
    for handler in list(root.handlers):
        if type(handler) is logging.StreamHandler:
            root.removeHandler(handler)


@pytest.fixture
def console():
    """Console writing to a buffer; also installed as the global console."""
    c = Console(stream=io.StringIO())
    set_console(c)
    return c


@pytest.fixture
def cache(tmp_path):
    return CacheStore(tmp_path / "cache")


@pytest.fixture
def workspace(tmp_path):
    ws = Workspace(tmp_path / "workspace")
    ws.reset()
    return ws


@pytest.fixture
def crate_config():
    return REPO_ROOT / "pipelines" / "crate.yml"
