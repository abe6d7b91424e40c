import os
import sys
import tempfile
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

# Keep settings, logs and the default database out of the user's home.
os.environ.setdefault("RUNSYNC_HOME", tempfile.mkdtemp(prefix="runsync-tests-"))

import pytest


@pytest.fixture
def database(tmp_path):
    import db

    db.set_database_path(tmp_path / "runsync.db")
    db.initialize_database()
    return db


@pytest.fixture(autouse=True)
def _clear_conflicts():
    from runsync import conflicts

    conflicts.clear()
    yield
    conflicts.clear()
