"""通知メッセージの組み立て"""
import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping, Optional
import pytz
from complitrack.core.config import settings
from complitrack.models.reference import Resolved, Unresolved

tz = pytz.timezone(settings.TIMEZONE)

SIGNATURE = "Best regards,\nCompli-AI Team"
AUTOMATED_FOOTER = "---\nThis is an automated reminder. Please do not reply to this email."


class ReminderType(str, enum.Enum):
    """リマインド種別（緊急度順）"""
    OVERDUE = "overdue"
    DUE_TODAY = "due_today"
    DUE_SOON = "due_soon"
    UPCOMING = "upcoming"


@dataclass(frozen=True)
class Message:
    subject: str
    body: str


def _value(value: Any) -> Any:
    return getattr(value, "value", value)


def format_date(value: Optional[datetime]) -> str:
    if value is None:
        return "Not set"
    return value.astimezone(tz).strftime("%B %d, %Y")


def _format_change_value(value: Any) -> str:
    if value is None or value == "" or value == []:
        return "Not set"
    if isinstance(value, Resolved):
        return f"#{value.id}"
    if isinstance(value, Unresolved):
        return value.display
    if isinstance(value, datetime):
        return format_date(value)
    if isinstance(value, (list, tuple)):
        return ", ".join(str(_value(item)) for item in value)
    return str(_value(value))


def entity_label(task, client=None) -> str:
    if client is not None:
        return client.name
    entity = task.entity
    if isinstance(entity, Unresolved):
        return entity.display
    return "N/A"


def _task_details(task, client) -> str:
    hours = task.estimated_hours if task.estimated_hours else "Not specified"
    return (
        f"Task: {task.name}\n"
        f"Description: {task.description}\n"
        f"Client/Entity: {entity_label(task, client)}\n"
        f"Priority: {_value(task.priority)}\n"
        f"Due Date: {format_date(task.due_date)}\n"
        f"Frequency: {_value(task.recurring_frequency)}\n"
        f"Category: {_value(task.category)}\n"
        f"Estimated Hours: {hours}"
    )


_REMINDER_HEADERS = {
    ReminderType.OVERDUE: ("URGENT: Task Overdue", "CRITICAL"),
    ReminderType.DUE_TODAY: ("Task Due Today", "HIGH"),
    ReminderType.DUE_SOON: ("Task Due Soon", "MEDIUM"),
    ReminderType.UPCOMING: ("Task Reminder", "LOW"),
}

_REMINDER_NOTES = {
    ReminderType.OVERDUE: (
        "This task is OVERDUE and requires immediate attention. Please update the status "
        "and complete as soon as possible.\n\n"
        "OVERDUE TASKS MAY RESULT IN COMPLIANCE VIOLATIONS AND PENALTIES."
    ),
    ReminderType.DUE_TODAY: (
        "This task is due TODAY. Please ensure it is completed or updated with current progress.\n\n"
        "Please prioritize this task to avoid delays."
    ),
    ReminderType.DUE_SOON: "This task is due soon. Please review and update the status accordingly.",
    ReminderType.UPCOMING: "This is a friendly reminder about your upcoming task. Please plan accordingly.",
}


def reminder_message(task, user, client, reminder_type: ReminderType, days_until_due: int) -> Message:
    """緊急度に応じたリマインド"""
    title, urgency = _REMINDER_HEADERS[reminder_type]
    if reminder_type == ReminderType.OVERDUE:
        action = "IMMEDIATE ACTION REQUIRED"
    elif reminder_type == ReminderType.DUE_TODAY:
        action = "DUE TODAY"
    else:
        action = f"Due in {days_until_due} days"

    body = (
        f"Dear {user.name},\n\n"
        f"{urgency} - {action}\n\n"
        f"{_task_details(task, client)}\n"
        f"Current Status: {_value(task.status)}\n\n"
        f"{_REMINDER_NOTES[reminder_type]}\n\n"
        f"{SIGNATURE}\n\n"
        f"{AUTOMATED_FOOTER}"
    )
    return Message(subject=f"{title} - {task.name}", body=body)


def assignment_message(task, user, client) -> Message:
    body = (
        f"Dear {user.name},\n\n"
        f"You have been assigned a new task:\n\n"
        f"{_task_details(task, client)}\n\n"
        f"Please review the task details and update the status accordingly.\n\n"
        f"{SIGNATURE}"
    )
    return Message(subject=f"New Task Assigned: {task.name}", body=body)


def update_message(task, user, client, changed_fields: Mapping, updated_by=None) -> Message:
    changes = "\n".join(
        f"- {field.replace('_', ' ').capitalize()}: "
        f"{_format_change_value(change['from'])} -> {_format_change_value(change['to'])}"
        for field, change in changed_fields.items()
    )
    by = f"\nUpdated by: {updated_by.name} ({updated_by.email})\n" if updated_by else ""
    body = (
        f"Dear {user.name},\n\n"
        f"Your assigned task has been updated:\n\n"
        f"{_task_details(task, client)}\n\n"
        f"Changes Made:\n{changes}\n"
        f"{by}\n"
        f"Please review the changes and take any necessary action.\n\n"
        f"{SIGNATURE}"
    )
    return Message(subject=f"Task Updated: {task.name}", body=body)


def status_change_message(task, user, client, old_status, new_status, updated_by=None) -> Message:
    by = f"\nUpdated by: {updated_by.name} ({updated_by.email})\n" if updated_by else ""
    body = (
        f"Dear {user.name},\n\n"
        f"The status of your task has changed: {_value(old_status)} -> {_value(new_status)}\n\n"
        f"{_task_details(task, client)}\n"
        f"{by}\n"
        f"{SIGNATURE}"
    )
    return Message(subject=f"Task Status Changed: {task.name} ({_value(new_status)})", body=body)


def reassignment_message(task, user, previous_user, client, updated_by=None) -> Message:
    previous = previous_user.name if previous_user else "Unassigned"
    by = f"\nReassigned by: {updated_by.name} ({updated_by.email})\n" if updated_by else ""
    body = (
        f"Dear {user.name},\n\n"
        f"A task has been reassigned to you (previously: {previous}):\n\n"
        f"{_task_details(task, client)}\n"
        f"{by}\n"
        f"Please review the task details and update the status accordingly.\n\n"
        f"{SIGNATURE}"
    )
    return Message(subject=f"Task Reassigned: {task.name}", body=body)
