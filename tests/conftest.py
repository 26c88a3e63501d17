"""tcmerge test fixtures — shared across all test modules."""
import os
import sys
import pytest

# Ensure the project root and the test helpers are on path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))
sys.path.insert(0, os.path.dirname(__file__))

from storeutil import TASK_A, build_store, create, ts, update  # noqa: E402


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep the developer's own TASKDATA / TCMERGE_* settings out of the tests."""
    for key in list(os.environ):
        if key.startswith("TCMERGE_") or key == "TASKDATA":
            monkeypatch.delenv(key, raising=False)


@pytest.fixture
def task_dir(tmp_path):
    d = tmp_path / "task"
    d.mkdir()
    return d


@pytest.fixture
def state_dir(tmp_path):
    return tmp_path / "state"


@pytest.fixture
def primary(task_dir):
    """Primary store holding task A created at t=1 with description 'buy milk'."""
    return build_store(task_dir / "taskchampion.sqlite3", [
        create(TASK_A),
        update(TASK_A, "description", "buy milk", ts(1)),
    ])
