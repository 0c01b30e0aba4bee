"""タスク API エンドポイント"""
import logging
from typing import Any, Dict, Optional
from fastapi import APIRouter, Body, Depends, FastAPI, File, Header, Query, Request, UploadFile
from fastapi.responses import JSONResponse
from complitrack.core.errors import (
    AccessDeniedFailure,
    ComplianceError,
    NotFoundFailure,
    PersistenceFailure,
    ValidationFailure,
)
from complitrack.models.document import Document
from complitrack.models.task import Task
from complitrack.services.history import to_jsonable
from complitrack.services.lifecycle import TaskLifecycleEngine, default_engine
from complitrack.services.tasks import NoChange, TaskService, default_service, document_summary, sections_summary

logger = logging.getLogger(__name__)

router = APIRouter()


def get_service() -> TaskService:
    return default_service()


def get_engine() -> TaskLifecycleEngine:
    return default_engine()


def get_actor(
    x_user_id: Optional[int] = Header(default=None),
    service: TaskService = Depends(get_service),
):
    """X-User-Id ヘッダーの利用者。ヘッダーなしは内部呼び出し扱い"""
    if x_user_id is None:
        return None
    actor = service.store.find_user_by_id(x_user_id)
    if actor is None:
        raise AccessDeniedFailure("user", x_user_id)
    return actor


def task_out(task: Task) -> Dict[str, Any]:
    return {
        "id": task.id,
        "name": task.name,
        "description": task.description,
        "priority": task.priority.value,
        "category": task.category.value,
        "recurring_frequency": task.recurring_frequency.value,
        "due_date": task.due_date.isoformat(),
        "status": task.status.value,
        "scheduled_at": task.scheduled_at.isoformat() if task.scheduled_at else None,
        "activated_at": task.activated_at.isoformat() if task.activated_at else None,
        "assignee": to_jsonable(task.assignee),
        "entity": to_jsonable(task.entity),
        "task_assigned": task.task_assigned,
        "closure_rights_email": task.closure_rights_email,
        "tags": task.tags or [],
        "alert_emails": task.alert_emails or [],
        "estimated_hours": task.estimated_hours,
    }


def document_out(document: Document) -> Dict[str, Any]:
    out = document_summary(document)
    out.update({
        "task_id": document.task_id,
        "hash_alg": document.hash_alg,
        "hash_value": document.hash_value,
    })
    return out


# ---- タスク ----

@router.post("/tasks", status_code=201)
def create_task(
    payload: Any = Body(...),
    service: TaskService = Depends(get_service),
    actor=Depends(get_actor),
):
    result = service.create_task(payload, actor)
    return {"task": task_out(result.task), "email_sent": result.email_sent}


@router.get("/tasks")
def list_tasks(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    service: TaskService = Depends(get_service),
    actor=Depends(get_actor),
):
    result = service.list_tasks(actor, page=page, limit=limit)
    result["tasks"] = [task_out(task) for task in result["tasks"]]
    return result


@router.post("/tasks/import")
def import_tasks(
    file: UploadFile = File(...),
    service: TaskService = Depends(get_service),
):
    """CSV 一括取込"""
    content = file.file.read()
    return service.import_tasks_csv(content).model_dump()


@router.get("/tasks/{task_id}")
def get_task(task_id: int, service: TaskService = Depends(get_service), actor=Depends(get_actor)):
    return task_out(service.get_task(task_id, actor))


@router.patch("/tasks/{task_id}")
def update_task(
    task_id: int,
    payload: Any = Body(...),
    service: TaskService = Depends(get_service),
    actor=Depends(get_actor),
):
    result = service.apply_task_update(task_id, payload, actor)
    if isinstance(result, NoChange):
        return {"message": "No changes detected", "task": task_out(result.task), "changed_fields": {}}
    return {
        "message": "Task updated successfully",
        "task": task_out(result.task),
        "changed_fields": to_jsonable(result.changed_fields),
    }


@router.get("/tasks/{task_id}/history")
def get_task_history(
    task_id: int,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    service: TaskService = Depends(get_service),
    actor=Depends(get_actor),
):
    return service.get_task_history(task_id, page=page, limit=limit, actor=actor)


@router.get("/tasks/{task_id}/assessment")
def get_task_assessment(task_id: int, service: TaskService = Depends(get_service), actor=Depends(get_actor)):
    return service.aggregate_assessment(task_id, actor).model_dump(mode="json")


@router.get("/tasks/{task_id}/analysis")
def get_task_analysis(task_id: int, service: TaskService = Depends(get_service), actor=Depends(get_actor)):
    return service.get_task_analysis(task_id, actor)


@router.post("/tasks/{task_id}/reminders")
def send_reminder(
    task_id: int,
    payload: Dict[str, Any] = Body(default={}),
    service: TaskService = Depends(get_service),
    engine: TaskLifecycleEngine = Depends(get_engine),
    actor=Depends(get_actor),
):
    service.get_task(task_id, actor)
    sent = engine.send_single_reminder(task_id, payload.get("reminder_type", "due_soon"))
    return {"task_id": task_id, "sent": sent}


@router.post("/reminders/send-all")
def send_all_reminders(
    service: TaskService = Depends(get_service),
    engine: TaskLifecycleEngine = Depends(get_engine),
    actor=Depends(get_actor),
):
    service.ensure_admin(actor)
    summary = engine.run_reminder_sweep()
    return {"message": "Reminders sent successfully", "summary": summary.model_dump(mode="json")}


@router.get("/reminders/status")
def get_reminder_status(
    service: TaskService = Depends(get_service),
    engine: TaskLifecycleEngine = Depends(get_engine),
    actor=Depends(get_actor),
):
    service.ensure_admin(actor)
    return engine.reminder_status()


# ---- ドキュメント ----

@router.get("/tasks/{task_id}/documents")
def list_documents(task_id: int, service: TaskService = Depends(get_service), actor=Depends(get_actor)):
    return [document_out(doc) for doc in service.list_documents(task_id, actor)]


@router.get("/tasks/{task_id}/documents/sections")
def get_document_sections(task_id: int, service: TaskService = Depends(get_service), actor=Depends(get_actor)):
    return sections_summary(service.classify_documents(task_id, actor))


@router.post("/tasks/{task_id}/documents", status_code=201)
def upload_document(
    task_id: int,
    file: UploadFile = File(...),
    service: TaskService = Depends(get_service),
    actor=Depends(get_actor),
):
    data = file.file.read()
    document = service.upload_document(
        task_id,
        actor.id if actor else None,
        file.filename or "document",
        file.content_type or "application/octet-stream",
        data,
        actor,
    )
    return document_out(document)


@router.post("/documents/{document_id}/reanalyze")
def reanalyze_document(document_id: int, service: TaskService = Depends(get_service), actor=Depends(get_actor)):
    return document_out(service.reanalyze_document(document_id, actor))


@router.patch("/documents/{document_id}/status")
def update_document_status(
    document_id: int,
    payload: Dict[str, Any] = Body(...),
    service: TaskService = Depends(get_service),
    actor=Depends(get_actor),
):
    return document_out(service.update_document_status(document_id, payload.get("status"), actor))


# ---- エラー変換 ----

STATUS_CODES = (
    (ValidationFailure, 400),
    (AccessDeniedFailure, 403),
    (NotFoundFailure, 404),
    (PersistenceFailure, 500),
)


async def compliance_error_handler(request: Request, exc: ComplianceError):
    status_code = next((code for kind, code in STATUS_CODES if isinstance(exc, kind)), 500)
    if status_code >= 500:
        logger.error(f"Request failed: {request.method} {request.url.path}: {exc}")
    body: Dict[str, Any] = {"error": str(exc)}
    if isinstance(exc, ValidationFailure):
        body = {"error": exc.message, "details": to_jsonable(exc.to_dict())}
    return JSONResponse(status_code=status_code, content=body)


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ComplianceError, compliance_error_handler)
