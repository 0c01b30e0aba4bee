"""共通フィクスチャ（SQLite インメモリ + 偽の通知・解析・時計）"""
import os

# Settings は import 時に読まれるので先に設定する
os.environ.setdefault("OPENAI_API_KEY", "test-key")
os.environ.setdefault("DATABASE_URL", "sqlite://")

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from complitrack.core.db import Base
from complitrack.core.errors import AnalysisFailure, DeliveryFailure
from complitrack.models.reference import Resolved, Unresolved
from complitrack.models.task import RecurringFrequency, TaskCategory, TaskPriority, TaskStatus
from complitrack.schemas.analysis import DocumentAnalysisRecord
from complitrack.services.lifecycle import TaskLifecycleEngine
from complitrack.services.store import SqlAlchemyStore, create_tables
from complitrack.services.tasks import TaskService

T0 = datetime(2025, 3, 10, 9, 0, tzinfo=timezone.utc)


class ManualClock:
    """テスト用の手動時計"""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeNotifier:
    """送信内容を記録する。failing に含まれる宛先は DeliveryFailure"""

    def __init__(self):
        self.sent = []
        self.failing = set()
        self.result = True

    def send(self, address, subject, body):
        if address in self.failing:
            raise DeliveryFailure(f"Mailbox unavailable: {address}")
        self.sent.append({"to": address, "subject": subject, "body": body})
        return self.result

    def subjects(self):
        return [mail["subject"] for mail in self.sent]


class FakeAnalyzer:
    """固定の解析結果を返す。error を設定すると AnalysisFailure"""

    def __init__(self, raw=None):
        self.raw = raw or {"completionPercentage": 80, "riskAssessment": "low"}
        self.error = None
        self.calls = []

    def analyze(self, data, media_type, context=None):
        self.calls.append({"data": data, "media_type": media_type, "context": context})
        if self.error:
            raise AnalysisFailure(self.error)
        return DocumentAnalysisRecord.from_raw(self.raw)


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    create_tables(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def store(db_engine):
    return SqlAlchemyStore(sessionmaker(bind=db_engine, autoflush=False, expire_on_commit=False))


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def analyzer():
    return FakeAnalyzer()


@pytest.fixture
def service(store, notifier, analyzer, clock, tmp_path):
    return TaskService(store, notifier=notifier, analyzer=analyzer, clock=clock, upload_dir=str(tmp_path / "uploads"))


@pytest.fixture
def lifecycle(store, notifier, clock):
    return TaskLifecycleEngine(store, notifier, clock=clock)


@pytest.fixture
def alice(store):
    return store.insert_user("Alice", "alice@example.com")


@pytest.fixture
def bob(store):
    return store.insert_user("Bob", "bob@example.com")


@pytest.fixture
def admin(store):
    return store.insert_user("Admin", "admin@example.com", role="admin")


@pytest.fixture
def acme(store):
    return store.insert_client("Acme Pvt Ltd")


@pytest.fixture
def make_task(store, clock):
    """ストアに直接タスクを作る"""

    def _make(**overrides):
        values = {
            "name": "GSTR-3B March",
            "description": "Monthly GST return",
            "priority": TaskPriority.MEDIUM,
            "category": TaskCategory.GST,
            "recurring_frequency": RecurringFrequency.MONTHLY,
            "due_date": clock() + timedelta(days=5),
            "status": TaskStatus.OPEN,
            "assignee": Unresolved("Nobody"),
            "tags": [],
            "alert_emails": [],
        }
        if "assignee_user" in overrides:
            values["assignee"] = Resolved(overrides.pop("assignee_user").id)
        values.update(overrides)
        return store.insert_task(values)

    return _make
