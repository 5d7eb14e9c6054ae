import os
import sys
import tempfile
import unittest
from datetime import datetime, timedelta
from decimal import Decimal
from pathlib import Path

os.environ.setdefault("WORKFLOW_DB_URL", "sqlite+pysqlite:///:memory:")

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from sqlalchemy import func, select

from db.base import Base
from db.engine import build_engine, build_session_factory
from models.workflow_models import ItemHistory
from services.item_service import create_item
from services.lock_service import LockCoordinator
from services.request_service import decide_request, submit_request
from workflow_settings import WorkflowSettings

BASE_TIME = datetime(2026, 3, 2, 9, 0)


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    def __call__(self, db, user_id, message, notification_type, request_id):
        self.sent.append((user_id, notification_type, request_id, message))


class WorkflowTestCase(unittest.TestCase):
    """Each test gets its own file-backed SQLite database."""

    def setUp(self):
        self._tmpdir = tempfile.TemporaryDirectory()
        self.db_url = f"sqlite+pysqlite:///{Path(self._tmpdir.name) / 'workflow.db'}"
        self.engine = build_engine(self.db_url)
        Base.metadata.create_all(self.engine)
        self.SessionLocal = build_session_factory(self.engine)
        self.db = self.SessionLocal()
        self.coordinator = LockCoordinator()
        self.settings = WorkflowSettings(daily_fine_rate=Decimal("2.50"), default_rental_days=7, lock_timeout_seconds=5)
        self.notifier = RecordingNotifier()

    def tearDown(self):
        self.db.close()
        self.engine.dispose()
        self._tmpdir.cleanup()

    def make_item(self, name="Digital Multimeter", **kwargs):
        kwargs.setdefault("created_by", "admin")
        kwargs.setdefault("now", BASE_TIME - timedelta(days=30))
        return create_item(self.db, name=name, **kwargs)

    def submit(self, item_id, request_type="borrow", user_id="u-100", db=None, **kwargs):
        kwargs.setdefault("now", BASE_TIME)
        return submit_request(
            db or self.db,
            user_id=user_id,
            item_id=item_id,
            request_type=request_type,
            settings=self.settings,
            coordinator=self.coordinator,
            **kwargs,
        )

    def decide(self, request_id, outcome="approve", approver_id="mgr-1", **kwargs):
        kwargs.setdefault("now", BASE_TIME + timedelta(hours=1))
        kwargs.setdefault("notifier", self.notifier)
        return decide_request(
            self.db,
            request_id=request_id,
            approver_id=approver_id,
            outcome=outcome,
            settings=self.settings,
            coordinator=self.coordinator,
            **kwargs,
        )

    def history_count(self, item_id, activity_type=None):
        stmt = select(func.count(ItemHistory.HistoryID)).where(ItemHistory.ItemID == item_id)
        if activity_type is not None:
            stmt = stmt.where(ItemHistory.ActivityType == activity_type)
        total = self.db.execute(stmt).scalar()
        self.db.rollback()
        return int(total or 0)
