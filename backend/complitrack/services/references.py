"""担当者/エンティティ参照の解決（書き込み時に一度だけ行う）"""
import logging
from typing import Optional
from complitrack.models.reference import Reference, Resolved, Unresolved

logger = logging.getLogger(__name__)


def _as_id(value) -> Optional[int]:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def resolve_assignee(store, value) -> Optional[Reference]:
    """ユーザーID → 名前/メールの順に検索。見つからなければ表示名のまま"""
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    user_id = _as_id(value)
    if user_id is not None and store.find_user_by_id(user_id):
        return Resolved(user_id)
    text = str(value).strip()
    user = store.find_user_by_name_or_email(text)
    if user:
        return Resolved(user.id)
    logger.info(f"Assignee '{text}' not found, keeping display name")
    return Unresolved(text)


def resolve_entity(store, value) -> Optional[Reference]:
    """クライアントID → 名前の順に検索。見つからなければ表示名のまま"""
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    client_id = _as_id(value)
    if client_id is not None and store.find_client_by_id(client_id):
        return Resolved(client_id)
    text = str(value).strip()
    client = store.find_client_by_name(text)
    if client:
        return Resolved(client.id)
    return Unresolved(text)
