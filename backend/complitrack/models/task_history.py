"""TaskHistoryモデル（監査ログ、作成後は不変）"""
import enum
from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, Enum as SQLEnum, JSON
from sqlalchemy.sql import func
from complitrack.core.db import Base


class HistoryAction(str, enum.Enum):
    """履歴種別"""
    UPDATED = "updated"
    REASSIGNED = "reassigned"
    STATUS_CHANGED = "status_changed"


class TaskHistory(Base):
    """タスク変更履歴"""
    __tablename__ = "task_history"
    
    id = Column(Integer, primary_key=True, index=True)
    task_id = Column(Integer, ForeignKey("tasks.id"), nullable=False, index=True)
    action = Column(SQLEnum(HistoryAction), nullable=False)
    changed_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    
    # {field: {"from": ..., "to": ...}}
    changes = Column(JSON, nullable=False)
    previous_values = Column(JSON, nullable=True)
    new_values = Column(JSON, nullable=True)
    description = Column(Text, nullable=True)
    
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)
