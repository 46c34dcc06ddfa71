from __future__ import annotations

import pytest

from toolproxy.sandbox import Sandbox


@pytest.fixture
def workspace(tmp_path):
    """An empty workspace root inside the test's temp dir."""
    root = tmp_path / "workspace"
    root.mkdir()
    return root


@pytest.fixture
def sandbox(workspace):
    return Sandbox(workspace, exec_timeout_ms=5000)
