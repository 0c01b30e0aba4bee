"""エラー定義"""
from typing import Any, Iterable, Optional


class ComplianceError(Exception):
    """アプリケーション共通の基底例外"""


class ValidationFailure(ComplianceError):
    """入力値の不備（利用者が修正可能）"""

    def __init__(
        self,
        field: str,
        message: str,
        allowed: Optional[Iterable[str]] = None,
        provided: Any = None,
    ):
        self.field = field
        self.message = message
        self.allowed = list(allowed) if allowed is not None else None
        self.provided = provided
        super().__init__(f"{field}: {message}")

    def to_dict(self) -> dict:
        detail = {"field": self.field, "message": self.message}
        if self.allowed is not None:
            detail["allowed"] = self.allowed
        if self.provided is not None:
            detail["provided"] = self.provided
        return detail


class NotFoundFailure(ComplianceError):
    """存在しないタスク/ドキュメント"""

    def __init__(self, kind: str, identifier: Any):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")


class AccessDeniedFailure(ComplianceError):
    """リソースへの権限がない"""

    def __init__(self, kind: str, identifier: Any):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"Access denied to {kind} {identifier}")


class AnalysisFailure(ComplianceError):
    """ドキュメント解析（抽出・LLM呼び出し）の失敗"""


class DeliveryFailure(ComplianceError):
    """通知送信の失敗"""


class PersistenceFailure(ComplianceError):
    """ストア操作の失敗"""
