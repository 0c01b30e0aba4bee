"""タスク操作（HTTP層から呼ばれる窓口）"""
import csv
import hashlib
import io
import logging
import uuid
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union
from pydantic import BaseModel
from complitrack.core.clock import Clock, utcnow
from complitrack.core.config import settings
from complitrack.core.errors import (
    AccessDeniedFailure,
    DeliveryFailure,
    NotFoundFailure,
    PersistenceFailure,
    ValidationFailure,
)
from complitrack.models.document import Document, DocumentStatus
from complitrack.models.reference import Resolved, Unresolved
from complitrack.models.task import Task, TaskStatus
from complitrack.models.user import User
from complitrack.schemas.analysis import TaskAssessment
from complitrack.schemas.task import TaskCreate, TaskUpdate, validate_payload
from complitrack.services import notifications
from complitrack.services.aggregator import aggregate
from complitrack.services.analyzer import analyze_or_fallback, task_context
from complitrack.services.classifier import DocumentSections, classify
from complitrack.services.history import TaskHistoryRecorder, diff, to_jsonable
from complitrack.services.lifecycle import days_until_due
from complitrack.services.references import resolve_assignee, resolve_entity

logger = logging.getLogger(__name__)

REQUIRED_IMPORT_FIELDS = (
    "name", "description", "priority", "assignee", "category", "due_date", "recurring_frequency",
)

# 旧スプレッドシートの列名
IMPORT_HEADER_ALIASES = {
    "assignedTo": "assignee",
    "bucket": "category",
    "dueDate": "due_date",
    "recurringFrequency": "recurring_frequency",
    "estimatedHours": "estimated_hours",
    "closureRightsEmail": "closure_rights_email",
    "alertEmails": "alert_emails",
}


@dataclass
class CreateResult:
    task: Task
    email_sent: bool


@dataclass
class UpdateResult:
    task: Task
    changed_fields: Dict[str, Dict[str, Any]]


@dataclass
class NoChange:
    task: Task


class ImportSummary(BaseModel):
    total_processed: int = 0
    inserted: int = 0
    duplicates: int = 0
    skipped: int = 0
    emails_sent: int = 0
    email_errors: int = 0
    task_ids: List[int] = []
    duplicate_rows: List[Dict[str, Any]] = []
    skipped_rows: List[Dict[str, Any]] = []


def document_summary(document: Document) -> Dict[str, Any]:
    record = document.analysis_record
    return {
        "id": document.id,
        "file_name": document.file_name,
        "media_type": document.media_type,
        "file_size": document.file_size,
        "status": document.status.value,
        "uploaded_at": document.created_at.isoformat() if document.created_at else None,
        "has_analysis": record is not None,
        "analysis": record.model_dump(mode="json") if record else None,
    }


def sections_summary(sections: DocumentSections) -> Dict[str, Any]:
    return {
        "primary": [document_summary(doc) for doc in sections.primary],
        "supporting": [document_summary(doc) for doc in sections.supporting],
        "compliance": [document_summary(doc) for doc in sections.compliance],
        "other": [document_summary(doc) for doc in sections.other],
        "bucket_type": sections.category,
        "total_documents": sections.total,
        "sections_info": sections.sections_info(),
    }


class TaskService:
    """作成・更新・評価・ドキュメント処理"""

    def __init__(
        self,
        store,
        notifier=None,
        analyzer=None,
        clock: Clock = utcnow,
        upload_dir: str = settings.UPLOAD_DIR,
    ):
        self.store = store
        self.notifier = notifier
        self.analyzer = analyzer
        self.clock = clock
        self.upload_dir = Path(upload_dir)
        self.history = TaskHistoryRecorder(store, clock)

    # ---- 共通 ----

    def get_task(self, task_id: int, actor: Optional[User] = None) -> Task:
        task = self.store.find_task_by_id(task_id)
        if task is None:
            raise NotFoundFailure("task", task_id)
        self.ensure_access(task, actor)
        return task

    def ensure_access(self, task: Task, actor: Optional[User]) -> None:
        """管理者は全件、それ以外は担当タスクかクローズ権限のあるタスクのみ"""
        if actor is None or actor.is_admin:
            return
        assignee = task.assignee
        if isinstance(assignee, Resolved) and assignee.id == actor.id:
            return
        if isinstance(assignee, Unresolved) and assignee.display in (actor.name, actor.email):
            return
        if actor.email and task.closure_rights_email == actor.email:
            return
        raise AccessDeniedFailure("task", task.id)

    def ensure_admin(self, actor: Optional[User], resource: str = "reminders") -> None:
        if actor is not None and not actor.is_admin:
            raise AccessDeniedFailure(resource, actor.id)

    def list_tasks(self, actor: Optional[User] = None, page: int = 1, limit: int = 20) -> Dict[str, Any]:
        """新しい順。管理者以外は見えるタスクのみ"""
        page = max(page, 1)
        visible_to = None if actor is None or actor.is_admin else actor
        tasks = self.store.find_tasks(visible_to=visible_to, offset=(page - 1) * limit, limit=limit)
        total = self.store.count_tasks(visible_to=visible_to)
        return {
            "tasks": tasks,
            "page": page,
            "limit": limit,
            "total_pages": (total + limit - 1) // limit if limit else 0,
            "total_tasks": total,
        }

    def _initial_schedule(self, due_date, allow_escalated: bool = False) -> Dict[str, Any]:
        """期日が遠ければ upcoming として予約、近ければ即 open"""
        now = self.clock()
        days = days_until_due(due_date, now)
        if days > settings.UPCOMING_LEAD_DAYS:
            return {
                "status": TaskStatus.UPCOMING,
                "scheduled_at": due_date - timedelta(days=settings.UPCOMING_LEAD_DAYS),
            }
        if allow_escalated and days < 0:
            return {"status": TaskStatus.ESCALATED}
        return {"status": TaskStatus.OPEN, "activated_at": now}

    def _assignee_user(self, task: Task) -> Optional[User]:
        if isinstance(task.assignee, Resolved):
            return self.store.find_user_by_id(task.assignee.id)
        return None

    def _client(self, task: Task):
        if isinstance(task.entity, Resolved):
            return self.store.find_client_by_id(task.entity.id)
        return None

    def _notify(self, user: Optional[User], message: notifications.Message, task_id) -> bool:
        """通知失敗は呼び出し元に影響させない"""
        if self.notifier is None or user is None or not user.email:
            return False
        try:
            return bool(self.notifier.send(user.email, message.subject, message.body))
        except DeliveryFailure as e:
            logger.error(f"Failed to send notification for task {task_id}: {e}")
        except Exception as e:
            logger.error(f"Failed to send notification for task {task_id}: {e}", exc_info=True)
        return False

    def _notify_assignment(self, task: Task) -> bool:
        user = self._assignee_user(task)
        if user is None:
            logger.info(f"No user found for task {task.name}, skipping assignment email")
            return False
        message = notifications.assignment_message(task, user, self._client(task))
        return self._notify(user, message, task.id)

    # ---- 作成 ----

    def _task_values(self, data: TaskCreate) -> Dict[str, Any]:
        values = data.model_dump()
        values["assignee"] = resolve_assignee(self.store, data.assignee)
        values["entity"] = resolve_entity(self.store, data.entity)
        return values

    def create_task(self, payload: Dict[str, Any], actor: Optional[User] = None) -> CreateResult:
        data = validate_payload(TaskCreate, payload)
        values = self._task_values(data)
        values.update(self._initial_schedule(data.due_date))
        task = self.store.insert_task(values)
        logger.info(f"Created task {task.id} ({task.status.value})")
        return CreateResult(task=task, email_sent=self._notify_assignment(task))

    def import_tasks(self, rows: Iterable[Dict[str, Any]]) -> ImportSummary:
        """一括取込。不正な行はスキップし、バッチ全体は止めない"""
        summary = ImportSummary()
        pending: List[Dict[str, Any]] = []
        seen = set()

        for raw in rows:
            summary.total_processed += 1
            row = {
                IMPORT_HEADER_ALIASES.get(key, key): value
                for key, value in raw.items()
                if key and value not in (None, "")
            }
            name = row.get("name") or "Unnamed task"

            missing = [key for key in REQUIRED_IMPORT_FIELDS if key not in row]
            if missing:
                summary.skipped_rows.append({"name": name, "reason": "Missing required fields", "details": {"missing_fields": missing}})
                continue

            try:
                data = validate_payload(TaskCreate, row)
            except ValidationFailure as e:
                summary.skipped_rows.append({"name": name, "reason": "Invalid field value", "details": to_jsonable(e.to_dict())})
                continue

            values = self._task_values(data)
            if not isinstance(values["assignee"], Resolved):
                summary.skipped_rows.append({"name": name, "reason": "User not found", "details": {"assignee": data.assignee}})
                continue

            key = (data.name, data.due_date, values["entity"])
            if key in seen or self.store.find_duplicate_task(data.name, data.due_date, values["entity"]):
                summary.duplicate_rows.append({"name": data.name, "entity": data.entity, "due_date": data.due_date.isoformat(), "reason": "Duplicate task found"})
                continue
            seen.add(key)

            values.update(self._initial_schedule(data.due_date, allow_escalated=True))
            pending.append(values)

        inserted = self._insert_batch(pending, summary)
        for task in inserted:
            if self._notify_assignment(task):
                summary.emails_sent += 1
            else:
                summary.email_errors += 1

        summary.inserted = len(inserted)
        summary.task_ids = [task.id for task in inserted]
        summary.duplicates = len(summary.duplicate_rows)
        summary.skipped = len(summary.skipped_rows)
        logger.info(
            f"Imported tasks: {summary.inserted}/{summary.total_processed} "
            f"(duplicates {summary.duplicates}, skipped {summary.skipped})"
        )
        return summary

    def _insert_batch(self, pending: List[Dict[str, Any]], summary: ImportSummary) -> List[Task]:
        """まとめて挿入し、失敗したら1件ずつに切り替える"""
        if not pending:
            return []
        try:
            return self.store.insert_tasks(pending)
        except PersistenceFailure:
            logger.warning("Batch insert failed, retrying tasks one by one")

        inserted = []
        for values in pending:
            try:
                inserted.append(self.store.insert_task(values))
            except PersistenceFailure as e:
                summary.skipped_rows.append({"name": values["name"], "reason": "Persistence failure", "details": {"error": str(e)}})
        return inserted

    def import_tasks_csv(self, content: Union[str, bytes]) -> ImportSummary:
        if isinstance(content, bytes):
            content = content.decode("utf-8-sig")
        return self.import_tasks(csv.DictReader(io.StringIO(content)))

    # ---- 更新 ----

    def apply_task_update(
        self,
        task_id: int,
        payload: Dict[str, Any],
        actor: Optional[User] = None,
    ) -> Union[UpdateResult, NoChange]:
        """差分があれば保存して履歴を1件残す。差分なしは NoChange"""
        update = validate_payload(TaskUpdate, payload)
        current = self.get_task(task_id, actor)

        changes = update.changes(key_order=list(payload))
        if "assignee" in changes:
            changes["assignee"] = resolve_assignee(self.store, changes["assignee"])
        if "entity" in changes:
            changes["entity"] = resolve_entity(self.store, changes["entity"])
        self._check_upcoming(current, changes)

        changed_fields = diff(current, changes)
        if not changed_fields:
            logger.info(f"No changes detected for task {task_id}")
            return NoChange(task=current)

        updated = self.store.update_task(task_id, {key: change["to"] for key, change in changed_fields.items()})
        if updated is None:
            raise NotFoundFailure("task", task_id)
        self.history.record(task_id, actor.id if actor else None, changed_fields)
        self._notify_update(updated, changed_fields, actor)

        logger.info(f"Updated task {task_id}: {list(changed_fields)}")
        return UpdateResult(task=updated, changed_fields=changed_fields)

    def _check_upcoming(self, current: Task, changes: Dict[str, Any]) -> None:
        """更新後に upcoming となるタスクは未来の scheduled_at を持つこと"""
        if changes.get("status", current.status) != TaskStatus.UPCOMING:
            return
        scheduled_at = changes.get("scheduled_at", current.scheduled_at)
        if current.status == TaskStatus.UPCOMING and scheduled_at == current.scheduled_at:
            return
        if scheduled_at is None or scheduled_at <= self.clock():
            raise ValidationFailure("scheduled_at", "An upcoming task needs a scheduled_at in the future")

    def _notify_update(self, task: Task, changed_fields: Dict[str, Any], actor: Optional[User]) -> None:
        user = self._assignee_user(task)
        if user is None:
            return
        client = self._client(task)
        if "assignee" in changed_fields:
            old = changed_fields["assignee"]["from"]
            previous_user = self.store.find_user_by_id(old.id) if isinstance(old, Resolved) else None
            message = notifications.reassignment_message(task, user, previous_user, client, actor)
        elif "status" in changed_fields:
            message = notifications.status_change_message(
                task, user, client, changed_fields["status"]["from"], changed_fields["status"]["to"], actor,
            )
        else:
            message = notifications.update_message(task, user, client, changed_fields, actor)
        self._notify(user, message, task.id)

    # ---- 履歴 ----

    def get_task_history(self, task_id: int, page: int = 1, limit: int = 20, actor: Optional[User] = None) -> Dict[str, Any]:
        task = self.get_task(task_id, actor)
        entries = self.store.find_history_by_task(task_id, page=page, limit=limit)
        total = self.store.count_history_by_task(task_id)
        return {
            "task_id": task_id,
            "task_name": task.name,
            "history": [
                {
                    "id": entry.id,
                    "action": entry.action.value,
                    "changed_by": entry.changed_by,
                    "changes": entry.changes,
                    "description": entry.description,
                    "created_at": entry.created_at.isoformat() if entry.created_at else None,
                }
                for entry in entries
            ],
            "page": page,
            "limit": limit,
            "total_pages": (total + limit - 1) // limit if limit else 0,
            "total_entries": total,
        }

    # ---- 評価・分類 ----

    def aggregate_assessment(self, task_id: int, actor: Optional[User] = None) -> TaskAssessment:
        task = self.get_task(task_id, actor)
        documents = self.store.find_documents_by_task(task_id)
        assessment = aggregate([doc.analysis_record for doc in documents], task.estimated_hours)
        return assessment.model_copy(update={"analyzed_at": self.clock()})

    def classify_documents(self, task_id: int, actor: Optional[User] = None) -> DocumentSections:
        task = self.get_task(task_id, actor)
        return classify(self.store.find_documents_by_task(task_id), task.category)

    def get_task_analysis(self, task_id: int, actor: Optional[User] = None) -> Dict[str, Any]:
        """タスク概要 + 評価 + ドキュメント別解析 + セクション分類"""
        task = self.get_task(task_id, actor)
        documents = self.store.find_documents_by_task(task_id)
        records = [doc.analysis_record for doc in documents]
        now = self.clock()
        assessment = aggregate(records, task.estimated_hours).model_copy(update={"analyzed_at": now})
        return {
            "task": {
                "id": task.id,
                "name": task.name,
                "description": task.description,
                "priority": task.priority.value,
                "category": task.category.value,
                "due_date": task.due_date.isoformat(),
                "status": task.status.value,
                "estimated_hours": task.estimated_hours,
                "days_until_due": days_until_due(task.due_date, now),
                "is_overdue": task.due_date < now,
            },
            "analysis": assessment.model_dump(mode="json"),
            "document_analyses": [document_summary(doc) for doc in documents],
            "document_sections": sections_summary(classify(documents, task.category)),
            "summary": {
                "total_documents": len(documents),
                "completion_percentage": assessment.overall_completion_percentage,
                "ready_for_closure": assessment.task_readiness.value == "ready_for_closure",
                "risk_level": assessment.overall_risk_level.value,
                "high_risk_documents": sum(1 for record in records if record and record.risk_level.value in ("high", "critical")),
                "recommendations": assessment.consolidated_recommendations,
            },
        }

    # ---- ドキュメント ----

    def _analyzer(self):
        if self.analyzer is None:
            from complitrack.services.analyzer import DocumentAnalyzer
            self.analyzer = DocumentAnalyzer()
        return self.analyzer

    def upload_document(
        self,
        task_id: int,
        user_id: Optional[int],
        file_name: str,
        media_type: str,
        data: bytes,
        actor: Optional[User] = None,
    ) -> Document:
        """保存 → 解析（失敗時はフォールバック）→ Document 登録"""
        task = self.get_task(task_id, actor)

        stored_file_name = f"{uuid.uuid4().hex}{Path(file_name).suffix}"
        self.upload_dir.mkdir(parents=True, exist_ok=True)
        storage_location = self.upload_dir / stored_file_name
        storage_location.write_bytes(data)

        record = analyze_or_fallback(self._analyzer(), data, media_type, task_context(task))

        document = self.store.insert_document({
            "task_id": task_id,
            "user_id": user_id,
            "file_name": file_name,
            "stored_file_name": stored_file_name,
            "media_type": media_type,
            "file_size": len(data),
            "hash_alg": "SHA-256",
            "hash_value": hashlib.sha256(data).hexdigest(),
            "storage_location": str(storage_location),
            "status": DocumentStatus.VALIDATED,
            "analysis": record.to_storage(),
        })
        logger.info(f"Uploaded document {document.id} for task {task_id} (analysis success: {record.analysis_success})")
        return document

    def get_document(self, document_id: int, actor: Optional[User] = None) -> Document:
        """親タスクにアクセスできる利用者のみ"""
        document = self.store.find_document_by_id(document_id)
        if document is None:
            raise NotFoundFailure("document", document_id)
        if actor is not None:
            self.get_task(document.task_id, actor)
        return document

    def reanalyze_document(self, document_id: int, actor: Optional[User] = None) -> Document:
        """保存済みファイルを再解析して解析結果を置き換える"""
        document = self.get_document(document_id, actor)
        task = self.store.find_task_by_id(document.task_id)

        try:
            data = Path(document.storage_location).read_bytes()
        except OSError as e:
            logger.error(f"Stored file for document {document_id} is unreadable: {e}")
            from complitrack.schemas.analysis import DocumentAnalysisRecord
            record = DocumentAnalysisRecord.fallback(f"Stored file unreadable: {e}")
        else:
            record = analyze_or_fallback(self._analyzer(), data, document.media_type, task_context(task))

        updated = self.store.update_document(document_id, {"analysis": record.to_storage()})
        if updated is None:
            raise NotFoundFailure("document", document_id)
        logger.info(f"Reanalyzed document {document_id}")
        return updated

    def update_document_status(self, document_id: int, status: str, actor: Optional[User] = None) -> Document:
        try:
            status = DocumentStatus(status)
        except ValueError:
            raise ValidationFailure(
                "status", "Invalid document status",
                allowed=[member.value for member in DocumentStatus], provided=status,
            )
        self.get_document(document_id, actor)
        document = self.store.update_document(document_id, {"status": status})
        if document is None:
            raise NotFoundFailure("document", document_id)
        return document

    def list_documents(self, task_id: int, actor: Optional[User] = None) -> List[Document]:
        self.get_task(task_id, actor)
        return self.store.find_documents_by_task(task_id)


def default_service() -> TaskService:
    """本番用（DBストア + SMTP + OpenAI）"""
    from complitrack.core.mailer import smtp_notifier
    from complitrack.services.store import SqlAlchemyStore

    return TaskService(SqlAlchemyStore(), notifier=smtp_notifier)
