"""
Test environment: a throwaway SQLite database, log directory and lock
directory, set before any shipsync module reads its settings.
"""
import os
import tempfile

_TMP = tempfile.mkdtemp(prefix="shipsync-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TMP, 'test.db')}"
os.environ["LOG_DIR"] = os.path.join(_TMP, "logs")
os.environ["LOCK_DIR"] = os.path.join(_TMP, "locks")
os.environ["GOOGLE_SHEETS_CREDENTIALS_PATH"] = os.path.join(_TMP, "credentials", "sheets.json")
os.environ["SMTP_HOST"] = ""
os.environ["SLACK_WEBHOOK_URL"] = ""

import pytest  # noqa: E402

from shipsync.models.base import SessionLocal, init_db  # noqa: E402
from shipsync.models.sync_state import SyncProperty, SyncRunLog, SystemLogEntry  # noqa: E402

init_db()


@pytest.fixture(autouse=True)
def clean_tables():
    db = SessionLocal()
    try:
        for model in (SyncProperty, SyncRunLog, SystemLogEntry):
            db.query(model).delete()
        db.commit()
    finally:
        db.close()
    yield


@pytest.fixture
def lock_dir():
    return os.environ["LOCK_DIR"]
