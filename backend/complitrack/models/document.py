"""Documentモデル"""
import enum
from typing import Optional
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Enum as SQLEnum, JSON
from sqlalchemy.sql import func
from complitrack.core.db import Base
from complitrack.schemas.analysis import DocumentAnalysisRecord


class DocumentStatus(str, enum.Enum):
    """ドキュメントステータス"""
    PENDING = "pending"
    VALIDATED = "validated"
    FAILED = "failed"


class Document(Base):
    """アップロードされたドキュメント"""
    __tablename__ = "documents"
    
    id = Column(Integer, primary_key=True, index=True)
    task_id = Column(Integer, ForeignKey("tasks.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    
    # ファイル情報
    file_name = Column(String, nullable=False)
    stored_file_name = Column(String, nullable=False)
    media_type = Column(String, nullable=False)
    file_size = Column(Integer, nullable=False)
    hash_alg = Column(String, nullable=False, default="SHA-256")
    hash_value = Column(String, nullable=False)
    storage_location = Column(String, nullable=False)
    
    status = Column(SQLEnum(DocumentStatus), default=DocumentStatus.VALIDATED, nullable=False)
    
    # 解析結果（DocumentAnalysisRecord の JSON）
    analysis = Column(JSON, nullable=True)
    
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    @property
    def analysis_record(self) -> Optional[DocumentAnalysisRecord]:
        if not self.analysis:
            return None
        return DocumentAnalysisRecord.from_raw(self.analysis)
