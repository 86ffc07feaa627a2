from pathlib import Path

import pytest

from corral.execution import mount_security
from corral.infrastructure.database import AppDatabase


@pytest.fixture
def db() -> AppDatabase:
    """Create an in-memory database for testing."""
    app_db = AppDatabase()
    app_db._init_test()
    return app_db


@pytest.fixture
def workspace(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point groups/ and data/ at a temp directory."""
    groups_dir = tmp_path / "groups"
    data_dir = tmp_path / "data"
    groups_dir.mkdir()
    data_dir.mkdir()
    monkeypatch.setattr("corral.groups.paths.GROUPS_DIR", groups_dir)
    monkeypatch.setattr("corral.groups.paths.DATA_DIR", data_dir)
    monkeypatch.setattr("corral.execution.mount_builder.PROJECT_ROOT", tmp_path)
    monkeypatch.setattr("corral.execution.mount_builder.GLOBAL_MEMORY_FILE", groups_dir / "global" / "MEMORY.md")
    return tmp_path


@pytest.fixture(autouse=True)
def reset_allowlist_cache():
    mount_security._reset_cache()
    yield
    mount_security._reset_cache()
