"""タスク変更履歴（差分計算と監査ログ書き込み）"""
import enum
import logging
from collections.abc import Mapping
from datetime import date, datetime
from typing import Any, Dict, Optional
from complitrack.core.clock import Clock, ensure_utc, utcnow
from complitrack.models.reference import Resolved, Unresolved
from complitrack.models.task_history import HistoryAction, TaskHistory

logger = logging.getLogger(__name__)


def _comparable(value: Any) -> Any:
    """構造的な比較用に正規化（Enum は値、datetime は UTC）"""
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, (list, tuple)):
        return [_comparable(item) for item in value]
    if isinstance(value, Mapping):
        return {key: _comparable(item) for key, item in value.items()}
    return value


def to_jsonable(value: Any) -> Any:
    """履歴の JSON カラムに保存できる形へ"""
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Resolved):
        return {"resolved": value.id}
    if isinstance(value, Unresolved):
        return {"unresolved": value.display}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(item) for item in value]
    if isinstance(value, Mapping):
        return {str(key): to_jsonable(item) for key, item in value.items()}
    return value


def _current_value(previous: Any, key: str) -> Any:
    if isinstance(previous, Mapping):
        return previous.get(key)
    return getattr(previous, key, None)


def diff(previous: Any, proposed_changes: Mapping) -> Dict[str, Dict[str, Any]]:
    """proposed_changes のうち実際に値が変わるキーだけを {from, to} で返す

    順序は proposed_changes のキー順。空なら更新なし。
    """
    changed: Dict[str, Dict[str, Any]] = {}
    for key, value in proposed_changes.items():
        current = _current_value(previous, key)
        if _comparable(current) != _comparable(value):
            changed[key] = {"from": current, "to": value}
    return changed


def describe(changed_fields: Mapping) -> str:
    return f"Task updated: {', '.join(changed_fields)}"


def action_for(changed_fields: Mapping) -> HistoryAction:
    """担当者変更 > ステータス変更 > その他の順で種別を決める"""
    if "assignee" in changed_fields:
        return HistoryAction.REASSIGNED
    if "status" in changed_fields:
        return HistoryAction.STATUS_CHANGED
    return HistoryAction.UPDATED


class TaskHistoryRecorder:
    """変更差分を TaskHistory として保存する"""

    def __init__(self, store, clock: Clock = utcnow):
        self.store = store
        self.clock = clock

    def record(
        self,
        task_id: int,
        actor_id: Optional[int],
        changed_fields: Mapping,
        action: Optional[HistoryAction] = None,
    ) -> TaskHistory:
        entry = self.store.insert_history_entry({
            "task_id": task_id,
            "action": action or action_for(changed_fields),
            "changed_by": actor_id,
            "changes": to_jsonable(changed_fields),
            "previous_values": {key: to_jsonable(change["from"]) for key, change in changed_fields.items()},
            "new_values": {key: to_jsonable(change["to"]) for key, change in changed_fields.items()},
            "description": describe(changed_fields),
            "created_at": self.clock(),
        })
        logger.info(f"Recorded history for task {task_id}: {list(changed_fields)}")
        return entry
