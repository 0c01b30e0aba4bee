"""ドキュメント解析結果 / タスク評価スキーマ

LLM の生出力はここで必ず DocumentAnalysisRecord に変換し、欠損・不正な値には
既定値を当てる。集計側では None チェックを行わない。
"""
import enum
import math
from datetime import datetime
from typing import Any, List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator
from complitrack.core.clock import utcnow


class CompletionStatus(str, enum.Enum):
    COMPLETED = "completed"
    PARTIALLY_COMPLETED = "partially_completed"
    NOT_COMPLETED = "not_completed"
    UNCLEAR = "unclear"


class Confidence(str, enum.Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class RiskLevel(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class PerformanceRating(str, enum.Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    SATISFACTORY = "satisfactory"
    NEEDS_IMPROVEMENT = "needs_improvement"
    POOR = "poor"


class RelevanceTier(str, enum.Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    IRRELEVANT = "irrelevant"


class RegulatoryCompliance(str, enum.Enum):
    COMPLIANT = "compliant"
    PARTIALLY_COMPLIANT = "partially_compliant"
    NON_COMPLIANT = "non_compliant"
    UNCLEAR = "unclear"


class TaskReadiness(str, enum.Enum):
    READY_FOR_CLOSURE = "ready_for_closure"
    NEEDS_MORE_WORK = "needs_more_work"


def _choice(enum_cls, value: Any, default):
    """列挙値へ変換。不正値・欠損は既定値"""
    if isinstance(value, enum_cls):
        return value
    if isinstance(value, str):
        try:
            return enum_cls(value.strip().lower())
        except ValueError:
            pass
    return default


def _percentage(value: Any, default: int = 0) -> int:
    if isinstance(value, bool) or value is None:
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(number):
        return default
    return max(0, min(100, int(round(number))))


def _string_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, (list, tuple)):
        return [str(item) for item in value if item is not None and str(item).strip()]
    return []


class ComplianceMetrics(BaseModel):
    """書類品質の指標"""
    model_config = ConfigDict(populate_by_name=True)

    documentation_quality: PerformanceRating = Field(PerformanceRating.SATISFACTORY, alias="documentationQuality")
    completeness_score: int = Field(50, alias="completenessScore")
    accuracy_assessment: Confidence = Field(Confidence.MEDIUM, alias="accuracyAssessment")
    timely_submission: bool = Field(False, alias="timelySubmission")
    regulatory_compliance: RegulatoryCompliance = Field(RegulatoryCompliance.UNCLEAR, alias="regulatoryCompliance")

    @field_validator("documentation_quality", mode="before")
    @classmethod
    def _documentation_quality(cls, v):
        return _choice(PerformanceRating, v, PerformanceRating.SATISFACTORY)

    @field_validator("completeness_score", mode="before")
    @classmethod
    def _completeness_score(cls, v):
        return _percentage(v, default=50)

    @field_validator("accuracy_assessment", mode="before")
    @classmethod
    def _accuracy_assessment(cls, v):
        return _choice(Confidence, v, Confidence.MEDIUM)

    @field_validator("timely_submission", mode="before")
    @classmethod
    def _timely_submission(cls, v):
        return v if isinstance(v, bool) else False

    @field_validator("regulatory_compliance", mode="before")
    @classmethod
    def _regulatory_compliance(cls, v):
        return _choice(RegulatoryCompliance, v, RegulatoryCompliance.UNCLEAR)


class DocumentAnalysisRecord(BaseModel):
    """1ドキュメント分の解析結果"""
    model_config = ConfigDict(populate_by_name=True)

    summary: str = "Document analysis completed"
    relevance: RelevanceTier = Field(RelevanceTier.MEDIUM, alias="taskRelevance")
    completion_status: CompletionStatus = Field(CompletionStatus.UNCLEAR, alias="taskCompletionStatus")
    completion_confidence: Confidence = Field(Confidence.MEDIUM, alias="completionConfidence")
    completion_percentage: int = Field(0, alias="completionPercentage")
    key_findings: List[str] = Field(default_factory=list, alias="keyFindings")
    compliance_metrics: ComplianceMetrics = Field(default_factory=ComplianceMetrics, alias="complianceMetrics")
    missing_elements: List[str] = Field(default_factory=list, alias="missingElements")
    recommendations: List[str] = Field(default_factory=list)
    risk_level: RiskLevel = Field(RiskLevel.MEDIUM, alias="riskAssessment")
    next_steps: List[str] = Field(default_factory=list, alias="nextSteps")
    contribution_to_task: str = Field("Document contributes to task completion", alias="contributionToTask")
    performance_rating: PerformanceRating = Field(PerformanceRating.SATISFACTORY, alias="performanceRating")
    validation_notes: str = Field("Document analyzed for task relevance", alias="validationNotes")
    requires_additional_docs: bool = Field(False, alias="requiresAdditionalDocs")
    additional_docs_needed: List[str] = Field(default_factory=list, alias="additionalDocsNeeded")
    analyzed_at: datetime = Field(default_factory=utcnow, alias="analyzedAt")

    # 解析失敗時のフォールバックかどうか
    analysis_success: bool = Field(True, alias="analysisSuccess")
    error_message: Optional[str] = Field(None, alias="errorMessage")

    @field_validator("summary", "contribution_to_task", "validation_notes", mode="before")
    @classmethod
    def _text(cls, v, info):
        if isinstance(v, str) and v.strip():
            return v
        return cls.model_fields[info.field_name].default

    @field_validator("relevance", mode="before")
    @classmethod
    def _relevance(cls, v):
        return _choice(RelevanceTier, v, RelevanceTier.MEDIUM)

    @field_validator("completion_status", mode="before")
    @classmethod
    def _completion_status(cls, v):
        return _choice(CompletionStatus, v, CompletionStatus.UNCLEAR)

    @field_validator("completion_confidence", mode="before")
    @classmethod
    def _completion_confidence(cls, v):
        return _choice(Confidence, v, Confidence.MEDIUM)

    @field_validator("completion_percentage", mode="before")
    @classmethod
    def _completion_percentage(cls, v):
        return _percentage(v)

    @field_validator("key_findings", "missing_elements", "recommendations", "next_steps", "additional_docs_needed", mode="before")
    @classmethod
    def _lists(cls, v):
        return _string_list(v)

    @field_validator("compliance_metrics", mode="before")
    @classmethod
    def _compliance_metrics(cls, v):
        if isinstance(v, (dict, ComplianceMetrics)):
            return v
        return {}

    @field_validator("risk_level", mode="before")
    @classmethod
    def _risk_level(cls, v):
        return _choice(RiskLevel, v, RiskLevel.MEDIUM)

    @field_validator("performance_rating", mode="before")
    @classmethod
    def _performance_rating(cls, v):
        return _choice(PerformanceRating, v, PerformanceRating.SATISFACTORY)

    @field_validator("requires_additional_docs", "analysis_success", mode="before")
    @classmethod
    def _flags(cls, v, info):
        if isinstance(v, bool):
            return v
        return cls.model_fields[info.field_name].default

    @field_validator("analyzed_at", mode="before")
    @classmethod
    def _analyzed_at(cls, v):
        return v if v else utcnow()

    @classmethod
    def from_raw(cls, raw: Any) -> "DocumentAnalysisRecord":
        """解析器の生出力（camelCase/snake_case どちらでも可）から生成"""
        if isinstance(raw, cls):
            return raw
        if not isinstance(raw, dict):
            raw = {}
        return cls.model_validate(raw)

    @classmethod
    def fallback(cls, error: str) -> "DocumentAnalysisRecord":
        """解析失敗時の代替レコード。良好な結果には寄せない"""
        return cls(
            summary="Analysis failed",
            relevance=RelevanceTier.LOW,
            completion_status=CompletionStatus.UNCLEAR,
            completion_confidence=Confidence.LOW,
            completion_percentage=0,
            recommendations=["Verify document format"],
            risk_level=RiskLevel.MEDIUM,
            contribution_to_task="Unknown: analysis did not complete",
            performance_rating=PerformanceRating.NEEDS_IMPROVEMENT,
            validation_notes="Unknown: analysis did not complete",
            analysis_success=False,
            error_message=error,
        )

    def to_storage(self) -> dict:
        return self.model_dump(mode="json")


class TaskAssessment(BaseModel):
    """タスク単位の評価（保存しない）"""
    overall_completion_status: CompletionStatus
    overall_completion_percentage: int
    documents_analyzed: int
    fully_completed_documents: int
    high_confidence_documents: int
    task_readiness: TaskReadiness
    overall_risk_level: RiskLevel
    consolidated_recommendations: List[str]
    estimated_completion_time: str
    analyzed_at: Optional[datetime] = None
