"""ドキュメント解析（テキスト抽出 + LLM）"""
import io
import json
import logging
import zipfile
from typing import Any, Dict, Optional
import docx
import pdfplumber
from openai import OpenAI, OpenAIError
from pydantic import ValidationError
from complitrack.core.config import settings
from complitrack.core.errors import AnalysisFailure
from complitrack.schemas.analysis import DocumentAnalysisRecord

logger = logging.getLogger(__name__)

PDF = "application/pdf"
DOCX = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
ZIP_TYPES = ("application/zip", "application/x-zip-compressed")

SYSTEM_PROMPT = (
    "You are an AI compliance expert analyzing a document for task completion "
    "assessment and validation. Respond in JSON."
)

RESPONSE_SHAPE = """{
  "summary": "Brief 2-3 sentence summary of the document",
  "taskRelevance": "high|medium|low|irrelevant",
  "taskCompletionStatus": "completed|partially_completed|not_completed|unclear",
  "completionConfidence": "high|medium|low",
  "completionPercentage": 0-100,
  "keyFindings": ["finding1", "finding2"],
  "complianceMetrics": {
    "documentationQuality": "excellent|good|satisfactory|needs_improvement|poor",
    "completenessScore": 0-100,
    "accuracyAssessment": "high|medium|low",
    "timelySubmission": true|false,
    "regulatoryCompliance": "compliant|partially_compliant|non_compliant|unclear"
  },
  "missingElements": ["element1"],
  "recommendations": ["recommendation1"],
  "riskAssessment": "low|medium|high|critical",
  "nextSteps": ["step1"],
  "contributionToTask": "How this document contributes to overall task completion",
  "performanceRating": "excellent|good|satisfactory|needs_improvement|poor",
  "validationNotes": "Notes about document validity for the task",
  "requiresAdditionalDocs": true|false,
  "additionalDocsNeeded": ["doc1"]
}"""


def _pdf_text(data: bytes) -> str:
    with pdfplumber.open(io.BytesIO(data)) as pdf:
        return "\n".join(page.extract_text() or "" for page in pdf.pages)


def _docx_text(data: bytes) -> str:
    document = docx.Document(io.BytesIO(data))
    return "\n".join(paragraph.text for paragraph in document.paragraphs)


def _zip_text(data: bytes) -> str:
    """ZIP内で最初に読めた PDF / DOCX / TXT"""
    with zipfile.ZipFile(io.BytesIO(data)) as archive:
        for name in archive.namelist():
            lowered = name.lower()
            try:
                if lowered.endswith(".pdf"):
                    return _pdf_text(archive.read(name))
                if lowered.endswith(".docx"):
                    return _docx_text(archive.read(name))
                if lowered.endswith(".txt"):
                    return archive.read(name).decode("utf-8", errors="replace")
            except Exception as e:
                logger.warning(f"Failed to parse {name} in ZIP: {e}")
                continue
    raise AnalysisFailure("No supported document found in ZIP or all documents failed to parse")


def extract_text(data: bytes, media_type: str) -> str:
    """メディアタイプに応じてテキストを抽出。失敗時は AnalysisFailure"""
    try:
        if media_type in ZIP_TYPES:
            return _zip_text(data)
        if media_type == PDF:
            return _pdf_text(data)
        if media_type == DOCX:
            return _docx_text(data)
        if media_type.startswith("text/"):
            return data.decode("utf-8", errors="replace")
    except AnalysisFailure:
        raise
    except Exception as e:
        raise AnalysisFailure(f"Text extraction failed for {media_type}: {e}") from e
    raise AnalysisFailure(f"Unsupported file type: {media_type}")


def task_context(task) -> Optional[Dict[str, Any]]:
    """プロンプトに渡すタスク情報"""
    if task is None:
        return None
    return {
        "name": task.name,
        "description": task.description,
        "category": getattr(task.category, "value", task.category),
        "priority": getattr(task.priority, "value", task.priority),
        "due_date": task.due_date.isoformat() if task.due_date else None,
    }


def build_prompt(text: str, context: Optional[Dict[str, Any]] = None) -> str:
    context_block = ""
    if context:
        context_block = f"""
TASK CONTEXT:
- Task Name: {context.get('name')}
- Description: {context.get('description')}
- Bucket: {context.get('category')}
- Priority: {context.get('priority')}
- Due Date: {context.get('due_date')}
"""
    return f"""{context_block}
Your primary responsibility is to:
1. Validate if the uploaded document is relevant and appropriate for the specified task
2. Assess the document's contribution to task completion
3. Identify any compliance issues or missing elements
4. Provide actionable recommendations for improvement

Respond with a JSON object of the following structure:
{RESPONSE_SHAPE}

Document Content:
{text}
"""


class DocumentAnalyzer:
    """OpenAI でドキュメントを解析し DocumentAnalysisRecord を返す"""

    def __init__(
        self,
        client=None,
        model: str = settings.OPENAI_MODEL,
        timeout: float = settings.ANALYZER_TIMEOUT_SECONDS,
        max_chars: int = settings.ANALYZER_MAX_CHARS,
    ):
        self.client = client or OpenAI(api_key=settings.OPENAI_API_KEY, timeout=timeout)
        self.model = model
        self.timeout = timeout
        self.max_chars = max_chars

    def analyze(self, data: bytes, media_type: str, context: Optional[Dict[str, Any]] = None) -> DocumentAnalysisRecord:
        text = extract_text(data, media_type)
        prompt = build_prompt(text[:self.max_chars], context)

        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                response_format={"type": "json_object"},
                temperature=0.3,
                timeout=self.timeout,
            )
            result = json.loads(response.choices[0].message.content)
        except OpenAIError as e:
            raise AnalysisFailure(f"LLM request failed: {e}") from e
        except (json.JSONDecodeError, TypeError, IndexError, AttributeError) as e:
            raise AnalysisFailure(f"Failed to parse LLM response: {e}") from e

        if not isinstance(result, dict):
            raise AnalysisFailure("LLM response is not a JSON object")
        try:
            return DocumentAnalysisRecord.from_raw(result)
        except ValidationError as e:
            raise AnalysisFailure(f"LLM response has invalid fields: {e}") from e


def analyze_or_fallback(analyzer, data: bytes, media_type: str, context=None) -> DocumentAnalysisRecord:
    """解析失敗はフォールバックレコードに変換する"""
    try:
        return analyzer.analyze(data, media_type, context)
    except AnalysisFailure as e:
        logger.error(f"Document analysis failed: {e}", exc_info=True)
        return DocumentAnalysisRecord.fallback(str(e))
