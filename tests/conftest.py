"""
Pytest configuration and fixtures.
"""

from pathlib import Path

import pytest

# Variables read by config.load_config and SecretsManager.
OVERRIDE_ENV = (
    "RERUN_MAX_RETRIES",
    "RERUN_ITERATION_DELAY",
    "RERUN_TIMEOUT",
    "RERUN_SETTLE_WINDOW",
    "RERUN_STORAGE_PATH",
    "RERUN_TOGGLE_HOTKEY",
    "AZURE_DEVOPS_ORG",
    "AZURE_DEVOPS_PROJECT",
    "AZURE_DEVOPS_TOKEN",
)


@pytest.fixture
def clean_env(monkeypatch):
    """Keep host environment overrides out of a test."""
    for key in OVERRIDE_ENV:
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def temp_file(tmp_path):
    """Create a file under the test's temporary directory."""
    def _create(name: str, content: str = "") -> Path:
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
        return path
    return _create
