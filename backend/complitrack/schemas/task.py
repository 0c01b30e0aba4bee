"""タスク入力スキーマ（作成・更新・一括取込で共通の検証）"""
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Type
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator
from complitrack.core.clock import ensure_utc
from complitrack.core.errors import ValidationFailure
from complitrack.models.task import TaskStatus, TaskPriority, TaskCategory, RecurringFrequency

ENUM_FIELDS = {
    "priority": TaskPriority,
    "category": TaskCategory,
    "recurring_frequency": RecurringFrequency,
    "status": TaskStatus,
}

# 旧表記（"one time", "on hold", "inprogress" など）を正規化
_STATUS_ALIASES = {"inprogress": "in-progress", "in progress": "in-progress", "on hold": "on-hold"}


def _normalize_choice(value: Any) -> Any:
    if isinstance(value, str):
        lowered = value.strip().lower()
        return _STATUS_ALIASES.get(lowered, lowered.replace(" ", "-"))
    return value


def _normalize_category(value: Any) -> Any:
    if isinstance(value, str):
        value = value.strip()
        if value.lower() == "other":
            return "other"
        return value.upper()
    return value


def _split_csv(value: Any) -> Any:
    """"a, b" 形式の文字列をリストに"""
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return value


def _parse_datetime(value: Any) -> Any:
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, str) and len(value.strip()) == 10:
        return f"{value.strip()}T00:00:00"
    return value


class _TaskFields(BaseModel):
    @field_validator("priority", "status", "recurring_frequency", mode="before", check_fields=False)
    @classmethod
    def _choices(cls, v):
        return _normalize_choice(v)

    @field_validator("category", mode="before", check_fields=False)
    @classmethod
    def _category(cls, v):
        return _normalize_category(v)

    @field_validator("tags", "alert_emails", mode="before", check_fields=False)
    @classmethod
    def _lists(cls, v):
        return _split_csv(v)

    @field_validator("due_date", "scheduled_at", mode="before", check_fields=False)
    @classmethod
    def _datetimes(cls, v):
        return _parse_datetime(v)

    @field_validator("due_date", "scheduled_at", mode="after", check_fields=False)
    @classmethod
    def _utc(cls, v):
        return ensure_utc(v)


class TaskCreate(_TaskFields):
    """タスク作成"""
    model_config = ConfigDict(extra="ignore")

    name: str
    description: str
    priority: TaskPriority
    category: TaskCategory
    due_date: datetime
    recurring_frequency: RecurringFrequency
    assignee: str
    entity: Optional[str] = None
    closure_rights_email: Optional[str] = None
    tags: List[str] = []
    alert_emails: List[str] = []
    estimated_hours: Optional[float] = None

    @field_validator("name", "description", "assignee", mode="after")
    @classmethod
    def _required_text(cls, v):
        if not v.strip():
            raise ValueError("must not be blank")
        return v.strip()


class TaskUpdate(_TaskFields):
    """タスク更新（指定したフィールドのみ）"""
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = None
    description: Optional[str] = None
    priority: Optional[TaskPriority] = None
    category: Optional[TaskCategory] = None
    due_date: Optional[datetime] = None
    recurring_frequency: Optional[RecurringFrequency] = None
    status: Optional[TaskStatus] = None
    scheduled_at: Optional[datetime] = None
    assignee: Optional[str] = None
    entity: Optional[str] = None
    closure_rights_email: Optional[str] = None
    tags: Optional[List[str]] = None
    alert_emails: Optional[List[str]] = None
    estimated_hours: Optional[float] = None

    @field_validator("name", "description", "priority", "category", "due_date",
                     "recurring_frequency", "status", "assignee", mode="after")
    @classmethod
    def _not_null(cls, v):
        if v is None:
            raise ValueError("may not be null")
        return v

    def changes(self, key_order: Optional[List[str]] = None) -> Dict[str, Any]:
        """明示的に指定された項目だけを返す（key_order があればその順）"""
        values = self.model_dump(exclude_unset=True)
        if not key_order:
            return values
        ordered = {key: values[key] for key in key_order if key in values}
        ordered.update((key, value) for key, value in values.items() if key not in ordered)
        return ordered


def validate_payload(schema: Type[BaseModel], payload: Any):
    """pydantic の検証エラーを ValidationFailure に揃える"""
    if not isinstance(payload, dict):
        raise ValidationFailure("body", "Expected an object")
    if schema is TaskUpdate and not payload:
        raise ValidationFailure("body", "No update data provided")
    try:
        return schema.model_validate(payload)
    except ValidationError as e:
        error = e.errors()[0]
        field = ".".join(str(part) for part in error["loc"]) or "body"
        enum_cls = ENUM_FIELDS.get(field)
        allowed = [member.value for member in enum_cls] if enum_cls else None
        provided = None if error["type"] == "missing" else error.get("input")
        message = error["msg"]
        if allowed and error["type"] == "enum":
            message = f"Invalid {field} value. Must be one of: {', '.join(allowed)}"
        raise ValidationFailure(field, message, allowed=allowed, provided=provided) from e
