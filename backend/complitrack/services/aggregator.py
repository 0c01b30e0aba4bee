"""ドキュメント解析結果 → タスク評価の集計

純粋関数。I/O を行わず、与えられたスナップショットだけから決定的に計算する。
"""
import math
from typing import List, Optional, Sequence
from complitrack.schemas.analysis import (
    CompletionStatus,
    Confidence,
    DocumentAnalysisRecord,
    RiskLevel,
    TaskAssessment,
    TaskReadiness,
)

FULLY_COMPLETED_THRESHOLD = 90
PARTIAL_COMPLETION_THRESHOLD = 50
MEDIUM_RISK_MAJORITY = 0.5
MAX_RECOMMENDATIONS = 5

NO_DOCUMENTS_HINT = "Upload documents to begin task analysis"
ESTIMATE_UNAVAILABLE = "Time estimation unavailable"


def estimate_completion_time(estimated_hours: Optional[float]) -> str:
    if estimated_hours is None:
        return ESTIMATE_UNAVAILABLE
    return f"{estimated_hours:g} hours estimated"


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _overall_status(percentage: int) -> CompletionStatus:
    if percentage >= FULLY_COMPLETED_THRESHOLD:
        return CompletionStatus.COMPLETED
    if percentage >= PARTIAL_COMPLETION_THRESHOLD:
        return CompletionStatus.PARTIALLY_COMPLETED
    return CompletionStatus.NOT_COMPLETED


def _overall_risk(records: Sequence[Optional[DocumentAnalysisRecord]]) -> RiskLevel:
    risks = [record.risk_level for record in records if record is not None]
    # critical は high として扱う
    if any(risk in (RiskLevel.HIGH, RiskLevel.CRITICAL) for risk in risks):
        return RiskLevel.HIGH
    medium_count = sum(1 for risk in risks if risk == RiskLevel.MEDIUM)
    if medium_count > len(records) * MEDIUM_RISK_MAJORITY:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def consolidate_recommendations(records: Sequence[Optional[DocumentAnalysisRecord]]) -> List[str]:
    """ドキュメント順に連結し、初出順で重複除去して上位5件"""
    seen = set()
    consolidated: List[str] = []
    for record in records:
        if record is None:
            continue
        for recommendation in record.recommendations:
            if recommendation in seen:
                continue
            seen.add(recommendation)
            consolidated.append(recommendation)
            if len(consolidated) == MAX_RECOMMENDATIONS:
                return consolidated
    return consolidated


def aggregate(
    records: Sequence[Optional[DocumentAnalysisRecord]],
    estimated_hours: Optional[float] = None,
) -> TaskAssessment:
    """タスクの全ドキュメント分の解析結果を1つの評価にまとめる

    records の要素が None（未解析のドキュメント）の場合は完了率0として
    平均の分母に含める。
    """
    estimated_time = estimate_completion_time(estimated_hours)

    if not records:
        return TaskAssessment(
            overall_completion_status=CompletionStatus.NOT_COMPLETED,
            overall_completion_percentage=0,
            documents_analyzed=0,
            fully_completed_documents=0,
            high_confidence_documents=0,
            task_readiness=TaskReadiness.NEEDS_MORE_WORK,
            overall_risk_level=RiskLevel.MEDIUM,
            consolidated_recommendations=[NO_DOCUMENTS_HINT],
            estimated_completion_time=estimated_time,
        )

    analyzed = [record for record in records if record is not None]
    total = sum(record.completion_percentage for record in analyzed)
    percentage = _round_half_up(total / len(records))

    fully_completed = sum(
        1 for record in analyzed if record.completion_percentage >= FULLY_COMPLETED_THRESHOLD
    )
    high_confidence = sum(
        1 for record in analyzed if record.completion_confidence == Confidence.HIGH
    )
    readiness = (
        TaskReadiness.READY_FOR_CLOSURE
        if percentage >= FULLY_COMPLETED_THRESHOLD
        else TaskReadiness.NEEDS_MORE_WORK
    )

    return TaskAssessment(
        overall_completion_status=_overall_status(percentage),
        overall_completion_percentage=percentage,
        documents_analyzed=len(records),
        fully_completed_documents=fully_completed,
        high_confidence_documents=high_confidence,
        task_readiness=readiness,
        overall_risk_level=_overall_risk(records),
        consolidated_recommendations=consolidate_recommendations(records),
        estimated_completion_time=estimated_time,
    )
