"""担当者/エンティティ参照（解決済みID or 未解決の表示名）"""
from dataclasses import dataclass
from typing import Optional, Union


@dataclass(frozen=True)
class Resolved:
    """DB上のユーザー/クライアントに解決できた参照"""
    id: int


@dataclass(frozen=True)
class Unresolved:
    """解決できなかった参照（入力された表示名のまま保持）"""
    display: str


Reference = Union[Resolved, Unresolved]


def reference_from_columns(resolved_id: Optional[int], display: Optional[str]) -> Optional[Reference]:
    if resolved_id is not None:
        return Resolved(resolved_id)
    if display:
        return Unresolved(display)
    return None


def reference_to_columns(ref: Optional[Reference]) -> tuple:
    """(解決済みID, 表示名) のカラム値に展開"""
    if isinstance(ref, Resolved):
        return ref.id, None
    if isinstance(ref, Unresolved):
        return None, ref.display
    return None, None
