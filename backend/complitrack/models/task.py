"""Taskモデル"""
import enum
from typing import Optional
from sqlalchemy import Column, Integer, String, Text, Float, DateTime, ForeignKey, Enum as SQLEnum, JSON
from sqlalchemy.sql import func
from complitrack.core.db import Base
from complitrack.models.reference import Reference, reference_from_columns


class TaskStatus(str, enum.Enum):
    """タスクステータス"""
    UPCOMING = "upcoming"
    OPEN = "open"
    IN_PROGRESS = "in-progress"
    ESCALATED = "escalated"
    ON_HOLD = "on-hold"
    COMPLETED = "completed"


TERMINAL_STATUSES = (TaskStatus.COMPLETED,)


class TaskPriority(str, enum.Enum):
    """優先度"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class TaskCategory(str, enum.Enum):
    """コンプライアンス区分（バケット）"""
    GST = "GST"
    IT = "IT"
    TDS = "TDS"
    PF = "PF"
    ESI = "ESI"
    ROC = "ROC"
    OTHER = "other"


class RecurringFrequency(str, enum.Enum):
    """繰り返し頻度"""
    ONE_TIME = "one-time"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    HALF_YEARLY = "half-yearly"
    YEARLY = "yearly"


class Task(Base):
    """タスクモデル"""
    __tablename__ = "tasks"
    
    id = Column(Integer, primary_key=True, index=True)
    
    # 基本情報
    name = Column(String, nullable=False, index=True)
    description = Column(Text, nullable=False)
    priority = Column(SQLEnum(TaskPriority), nullable=False)
    category = Column(SQLEnum(TaskCategory), nullable=False, index=True)
    recurring_frequency = Column(SQLEnum(RecurringFrequency), nullable=False)
    due_date = Column(DateTime(timezone=True), nullable=False, index=True)
    
    # ステータス
    status = Column(SQLEnum(TaskStatus), default=TaskStatus.OPEN, nullable=False, index=True)
    scheduled_at = Column(DateTime(timezone=True), nullable=True, index=True)  # upcoming の間のみ有効
    activated_at = Column(DateTime(timezone=True), nullable=True)
    
    # 担当者・エンティティ（解決済みID or 表示名）
    assignee_user_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    assignee_name = Column(String, nullable=True)
    entity_client_id = Column(Integer, ForeignKey("clients.id"), nullable=True, index=True)
    entity_name = Column(String, nullable=True)
    
    # 補助情報
    closure_rights_email = Column(String, nullable=True)
    tags = Column(JSON, nullable=True)
    alert_emails = Column(JSON, nullable=True)
    estimated_hours = Column(Float, nullable=True)
    
    # タイムスタンプ
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    @property
    def assignee(self) -> Optional[Reference]:
        return reference_from_columns(self.assignee_user_id, self.assignee_name)

    @property
    def entity(self) -> Optional[Reference]:
        return reference_from_columns(self.entity_client_id, self.entity_name)

    @property
    def task_assigned(self) -> bool:
        """担当者がユーザーに解決済みか"""
        return self.assignee_user_id is not None
