"""ドキュメントのセクション分類（ファイル名とカテゴリのみで判定）"""
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence
from complitrack.models.task import TaskCategory


@dataclass(frozen=True)
class SectionPatterns:
    primary: re.Pattern
    supporting: re.Pattern
    compliance: re.Pattern


def _patterns(primary: str, supporting: str, compliance: str) -> SectionPatterns:
    return SectionPatterns(
        primary=re.compile(primary, re.IGNORECASE),
        supporting=re.compile(supporting, re.IGNORECASE),
        compliance=re.compile(compliance, re.IGNORECASE),
    )


# GST の主書類は GSTR 様式・申告書。単なる "gst" では判定しない
CATEGORY_PATTERNS: Dict[TaskCategory, SectionPatterns] = {
    TaskCategory.GST: _patterns(
        r"gstr|return|form|filing",
        r"invoice|receipt|bill|purchase|sales",
        r"certificate|acknowledg|challan",
    ),
    TaskCategory.IT: _patterns(
        r"income|tax|return|itr|form",
        r"salary|tds|form16|investment",
        r"certificate|acknowledg|receipt",
    ),
    TaskCategory.TDS: _patterns(
        r"tds|deduction|form26|quarterly",
        r"salary|payment|vendor|contractor",
        r"certificate|form16|challan",
    ),
    TaskCategory.PF: _patterns(
        r"pf|provident|fund|ecr|monthly",
        r"employee|salary|contribution",
        r"certificate|acknowledg|receipt",
    ),
    TaskCategory.ESI: _patterns(
        r"esi|insurance|monthly|return",
        r"employee|salary|medical",
        r"certificate|acknowledg|receipt",
    ),
    TaskCategory.ROC: _patterns(
        r"roc|registrar|annual|return|form",
        r"balance|sheet|audit|financial",
        r"certificate|acknowledg|filing",
    ),
}

SECTION_DESCRIPTIONS = {
    "primary": "Primary {category} documents required for compliance",
    "supporting": "Supporting documents for {category} filing",
    "compliance": "Compliance certificates and acknowledgments",
    "other": "Other related documents",
}


@dataclass
class DocumentSections:
    """分類結果。各ドキュメントはちょうど1つのセクションに入る"""
    category: str
    primary: List[Any] = field(default_factory=list)
    supporting: List[Any] = field(default_factory=list)
    compliance: List[Any] = field(default_factory=list)
    other: List[Any] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.primary) + len(self.supporting) + len(self.compliance) + len(self.other)

    def sections_info(self) -> Dict[str, Dict[str, Any]]:
        return {
            name: {
                "count": len(getattr(self, name)),
                "description": description.format(category=self.category),
            }
            for name, description in SECTION_DESCRIPTIONS.items()
        }


def patterns_for(category) -> SectionPatterns:
    """カテゴリに対応するパターン。未知のカテゴリは GST にフォールバック"""
    try:
        return CATEGORY_PATTERNS[TaskCategory(category)]
    except (ValueError, KeyError):
        return CATEGORY_PATTERNS[TaskCategory.GST]


def section_for(file_name: str, patterns: SectionPatterns) -> str:
    """primary → supporting → compliance の順で最初に一致したもの"""
    if patterns.primary.search(file_name):
        return "primary"
    if patterns.supporting.search(file_name):
        return "supporting"
    if patterns.compliance.search(file_name):
        return "compliance"
    return "other"


def _file_name(document) -> str:
    if isinstance(document, dict):
        return document.get("file_name") or ""
    return getattr(document, "file_name", None) or ""


def classify(documents: Sequence[Any], category) -> DocumentSections:
    patterns = patterns_for(category)
    label = category.value if isinstance(category, TaskCategory) else str(category)
    sections = DocumentSections(category=label)
    for document in documents:
        getattr(sections, section_for(_file_name(document), patterns)).append(document)
    return sections
