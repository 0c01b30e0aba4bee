"""永続化ストア（SQLAlchemy）

各メソッドは自分でセッションを開閉する。解析・通知の待ち時間中に
セッションを保持しないこと。
"""
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence
from sqlalchemy import DateTime, func, or_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from complitrack.core.clock import ensure_utc
from complitrack.core.db import Base, SessionLocal, engine
from complitrack.core.errors import PersistenceFailure
from complitrack.models.document import Document
from complitrack.models.reference import Reference, reference_to_columns
from complitrack.models.task import Task, TaskStatus
from complitrack.models.task_history import TaskHistory
from complitrack.models.user import Client, User

logger = logging.getLogger(__name__)


def create_tables(bind=engine):
    """全テーブル作成"""
    Base.metadata.create_all(bind=bind)


def _to_utc(obj):
    """DateTime カラムを aware UTC に揃える（セッション外で呼ぶこと）"""
    if obj is None:
        return None
    for column in obj.__table__.columns:
        if isinstance(column.type, DateTime):
            setattr(obj, column.key, ensure_utc(getattr(obj, column.key)))
    return obj


def _task_columns(values: Dict[str, Any]) -> Dict[str, Any]:
    """assignee/entity 参照をカラム値に展開"""
    columns: Dict[str, Any] = {}
    for key, value in values.items():
        if key == "assignee":
            columns["assignee_user_id"], columns["assignee_name"] = reference_to_columns(value)
        elif key == "entity":
            columns["entity_client_id"], columns["entity_name"] = reference_to_columns(value)
        elif isinstance(value, datetime):
            columns[key] = ensure_utc(value)
        else:
            columns[key] = value
    return columns


def _visible_to(user: User):
    """担当タスク（未解決名の一致を含む）とクローズ権限のあるタスク"""
    names = [value for value in (user.name, user.email) if value]
    conditions = [
        Task.assignee_user_id == user.id,
        Task.assignee_user_id.is_(None) & Task.assignee_name.in_(names),
    ]
    if user.email:
        conditions.append(Task.closure_rights_email == user.email)
    return or_(*conditions)


class SqlAlchemyStore:
    """Task / Document / TaskHistory / User / Client のストア"""

    def __init__(self, session_factory=SessionLocal):
        self._session_factory = session_factory

    @contextmanager
    def _session(self):
        db: Session = self._session_factory()
        try:
            yield db
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Store operation failed: {e}", exc_info=True)
            raise PersistenceFailure(str(e)) from e
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    # ---- Task ----

    def find_tasks(
        self,
        statuses: Optional[Sequence[TaskStatus]] = None,
        exclude_statuses: Optional[Sequence[TaskStatus]] = None,
        scheduled_before: Optional[datetime] = None,
        due_before: Optional[datetime] = None,
        assigned_only: bool = False,
        visible_to: Optional[User] = None,
        offset: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> List[Task]:
        with self._session() as db:
            query = db.query(Task)
            if statuses:
                query = query.filter(Task.status.in_(list(statuses)))
            if exclude_statuses:
                query = query.filter(Task.status.notin_(list(exclude_statuses)))
            if scheduled_before is not None:
                query = query.filter(
                    Task.scheduled_at.isnot(None),
                    Task.scheduled_at <= ensure_utc(scheduled_before),
                )
            if due_before is not None:
                query = query.filter(Task.due_date < ensure_utc(due_before))
            if assigned_only:
                query = query.filter(Task.assignee_user_id.isnot(None))
            if visible_to is not None:
                query = query.filter(_visible_to(visible_to))
            query = query.order_by(Task.created_at.desc(), Task.id.desc())
            if offset:
                query = query.offset(offset)
            if limit:
                query = query.limit(limit)
            tasks = query.all()
        return [_to_utc(task) for task in tasks]

    def count_tasks(self, visible_to: Optional[User] = None) -> int:
        with self._session() as db:
            query = db.query(func.count(Task.id))
            if visible_to is not None:
                query = query.filter(_visible_to(visible_to))
            return query.scalar()

    def find_task_by_id(self, task_id: int) -> Optional[Task]:
        with self._session() as db:
            task = db.get(Task, task_id)
        return _to_utc(task)

    def find_duplicate_task(self, name: str, due_date: datetime, entity: Optional[Reference]) -> Optional[Task]:
        client_id, entity_name = reference_to_columns(entity)
        with self._session() as db:
            task = db.query(Task).filter(
                Task.name == name,
                Task.due_date == ensure_utc(due_date),
                Task.entity_client_id.is_(None) if client_id is None else Task.entity_client_id == client_id,
                Task.entity_name.is_(None) if entity_name is None else Task.entity_name == entity_name,
            ).first()
        return _to_utc(task)

    def insert_task(self, values: Dict[str, Any]) -> Task:
        return self.insert_tasks([values])[0]

    def insert_tasks(self, rows: Iterable[Dict[str, Any]]) -> List[Task]:
        with self._session() as db:
            tasks = [Task(**_task_columns(row)) for row in rows]
            db.add_all(tasks)
            db.flush()
            for task in tasks:
                db.refresh(task)
        return [_to_utc(task) for task in tasks]

    def update_task(
        self,
        task_id: int,
        values: Dict[str, Any],
        expected_status: Optional[TaskStatus] = None,
    ) -> Optional[Task]:
        """1件を原子的に更新。expected_status 指定時はその状態の場合のみ更新"""
        with self._session() as db:
            statement = update(Task).where(Task.id == task_id)
            if expected_status is not None:
                statement = statement.where(Task.status == expected_status)
            result = db.execute(
                statement.values(**_task_columns(values)).execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                return None
            task = db.get(Task, task_id)
        return _to_utc(task)

    # ---- Document ----

    def find_documents_by_task(self, task_id: int) -> List[Document]:
        with self._session() as db:
            documents = db.query(Document).filter(
                Document.task_id == task_id,
            ).order_by(Document.created_at, Document.id).all()
        return [_to_utc(doc) for doc in documents]

    def find_document_by_id(self, document_id: int) -> Optional[Document]:
        with self._session() as db:
            document = db.get(Document, document_id)
        return _to_utc(document)

    def insert_document(self, values: Dict[str, Any]) -> Document:
        with self._session() as db:
            document = Document(**values)
            db.add(document)
            db.flush()
            db.refresh(document)
        return _to_utc(document)

    def update_document(self, document_id: int, values: Dict[str, Any]) -> Optional[Document]:
        with self._session() as db:
            result = db.execute(
                update(Document).where(Document.id == document_id).values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                return None
            document = db.get(Document, document_id)
        return _to_utc(document)

    # ---- TaskHistory ----

    def insert_history_entry(self, values: Dict[str, Any]) -> TaskHistory:
        with self._session() as db:
            entry = TaskHistory(**values)
            db.add(entry)
            db.flush()
            db.refresh(entry)
        return _to_utc(entry)

    def find_history_by_task(self, task_id: int, page: int = 1, limit: int = 20) -> List[TaskHistory]:
        """新しい順"""
        page = max(page, 1)
        with self._session() as db:
            entries = db.query(TaskHistory).filter(
                TaskHistory.task_id == task_id,
            ).order_by(
                TaskHistory.created_at.desc(), TaskHistory.id.desc(),
            ).offset((page - 1) * limit).limit(limit).all()
        return [_to_utc(entry) for entry in entries]

    def count_history_by_task(self, task_id: int) -> int:
        with self._session() as db:
            return db.query(func.count(TaskHistory.id)).filter(TaskHistory.task_id == task_id).scalar()

    # ---- User / Client ----

    def insert_user(self, name: str, email: Optional[str] = None, role: str = "user") -> User:
        with self._session() as db:
            user = User(name=name, email=email, role=role)
            db.add(user)
            db.flush()
            db.refresh(user)
        return _to_utc(user)

    def insert_client(self, name: str, since=None) -> Client:
        with self._session() as db:
            client = Client(name=name, since=since)
            db.add(client)
            db.flush()
            db.refresh(client)
        return _to_utc(client)

    def find_user_by_id(self, user_id: int) -> Optional[User]:
        with self._session() as db:
            user = db.get(User, user_id)
        return _to_utc(user)

    def find_users_by_ids(self, user_ids: Iterable[int]) -> Dict[int, User]:
        ids = {user_id for user_id in user_ids if user_id is not None}
        if not ids:
            return {}
        with self._session() as db:
            users = db.query(User).filter(User.id.in_(ids)).all()
        return {user.id: _to_utc(user) for user in users}

    def find_user_by_name_or_email(self, value: str) -> Optional[User]:
        with self._session() as db:
            user = db.query(User).filter(
                or_(User.name == value, User.email == value),
            ).order_by(User.id).first()
        return _to_utc(user)

    def find_client_by_id(self, client_id: int) -> Optional[Client]:
        with self._session() as db:
            client = db.get(Client, client_id)
        return _to_utc(client)

    def find_client_by_name(self, name: str) -> Optional[Client]:
        with self._session() as db:
            client = db.query(Client).filter(Client.name == name).order_by(Client.id).first()
        return _to_utc(client)
