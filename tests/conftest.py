"""
Shared fixtures for the nodegraph test suite.
"""

import tempfile
from pathlib import Path

import pytest


@pytest.fixture(params=["sqlite", "graph"])
def backend(request):
    """An uninitialized backend of each kind, on a throwaway directory."""
    from nodegraph.store import GraphNodeBackend, SQLiteNodeBackend

    with tempfile.TemporaryDirectory() as tmpdir:
        if request.param == "sqlite":
            yield SQLiteNodeBackend(str(Path(tmpdir) / "test_nodegraph.db"))
        else:
            yield GraphNodeBackend(str(Path(tmpdir) / "test_nodegraph.graph.json"))


@pytest.fixture
def config_dir():
    """Temporary data directory for NodeGraph / config tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)
