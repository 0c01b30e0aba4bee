"""Tests for text extraction and the LLM document analyzer."""
import io
import json
import zipfile
from types import SimpleNamespace

import docx
import pytest
from openai import OpenAIError

from complitrack.core.errors import AnalysisFailure
from complitrack.schemas.analysis import CompletionStatus, RiskLevel
from complitrack.services.analyzer import (
    DOCX,
    DocumentAnalyzer,
    analyze_or_fallback,
    build_prompt,
    extract_text,
)


class FakeCompletions:
    def __init__(self, content=None, error=None):
        self.content = content
        self.error = error
        self.requests = []

    def create(self, **kwargs):
        self.requests.append(kwargs)
        if self.error:
            raise self.error
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def fake_client(content=None, error=None):
    completions = FakeCompletions(content, error)
    return SimpleNamespace(chat=SimpleNamespace(completions=completions)), completions


CONTEXT = {"name": "GSTR-3B March", "description": "Monthly return", "category": "GST", "priority": "high", "due_date": None}


class TestExtractText:
    def test_plain_text(self):
        assert extract_text("Filed GSTR-3B".encode(), "text/plain") == "Filed GSTR-3B"

    def test_docx(self):
        document = docx.Document()
        document.add_paragraph("Acknowledgement number 1234")
        buffer = io.BytesIO()
        document.save(buffer)
        assert "Acknowledgement number 1234" in extract_text(buffer.getvalue(), DOCX)

    def test_zip_uses_first_supported_member(self):
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w") as archive:
            archive.writestr("image.png", b"\x89PNG")
            archive.writestr("notes.txt", "challan paid")
        assert extract_text(buffer.getvalue(), "application/zip") == "challan paid"

    def test_zip_without_documents(self):
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w") as archive:
            archive.writestr("image.png", b"\x89PNG")
        with pytest.raises(AnalysisFailure):
            extract_text(buffer.getvalue(), "application/zip")

    def test_unsupported(self):
        with pytest.raises(AnalysisFailure):
            extract_text(b"\x00", "image/png")

    def test_broken_pdf(self):
        with pytest.raises(AnalysisFailure):
            extract_text(b"not a pdf", "application/pdf")


class TestDocumentAnalyzer:
    def test_parses_response(self):
        client, completions = fake_client(json.dumps({
            "taskCompletionStatus": "completed",
            "completionPercentage": 92,
            "riskAssessment": "low",
        }))
        record = DocumentAnalyzer(client=client, model="test-model", timeout=5).analyze(b"GSTR-3B filed", "text/plain", CONTEXT)

        assert record.completion_status == CompletionStatus.COMPLETED
        assert record.completion_percentage == 92
        request = completions.requests[0]
        assert request["model"] == "test-model"
        assert request["response_format"] == {"type": "json_object"}
        assert request["timeout"] == 5
        assert "GSTR-3B March" in request["messages"][1]["content"]

    def test_truncates_text(self):
        client, completions = fake_client("{}")
        DocumentAnalyzer(client=client, max_chars=10).analyze(b"0123456789ABCDEF", "text/plain")
        prompt = completions.requests[0]["messages"][1]["content"]
        assert "0123456789" in prompt
        assert "ABCDEF" not in prompt

    def test_provider_error(self):
        client, _ = fake_client(error=OpenAIError("connection reset"))
        with pytest.raises(AnalysisFailure):
            DocumentAnalyzer(client=client).analyze(b"text", "text/plain")

    def test_invalid_json(self):
        client, _ = fake_client("not json")
        with pytest.raises(AnalysisFailure):
            DocumentAnalyzer(client=client).analyze(b"text", "text/plain")

    def test_non_object_json(self):
        client, _ = fake_client("[1, 2]")
        with pytest.raises(AnalysisFailure):
            DocumentAnalyzer(client=client).analyze(b"text", "text/plain")


class TestFallback:
    def test_failure_becomes_fallback(self):
        client, _ = fake_client(error=OpenAIError("timed out"))
        record = analyze_or_fallback(DocumentAnalyzer(client=client), b"text", "text/plain")
        assert record.analysis_success is False
        assert record.risk_level == RiskLevel.MEDIUM
        assert "timed out" in record.error_message

    def test_success_passes_through(self):
        client, _ = fake_client(json.dumps({"completionPercentage": 40}))
        record = analyze_or_fallback(DocumentAnalyzer(client=client), b"text", "text/plain")
        assert record.analysis_success is True
        assert record.completion_percentage == 40

    @pytest.mark.parametrize("content", [
        '{"completionPercentage": NaN}',
        '{"completionPercentage": Infinity, "complianceMetrics": {"completenessScore": -Infinity}}',
    ])
    def test_non_finite_numbers_use_defaults(self, content):
        client, _ = fake_client(content)
        record = analyze_or_fallback(DocumentAnalyzer(client=client), b"hello", "text/plain")
        assert record.analysis_success is True
        assert record.completion_percentage == 0

    def test_invalid_field_is_analysis_failure(self):
        client, _ = fake_client(json.dumps({"analyzedAt": "sometime last week"}))
        with pytest.raises(AnalysisFailure):
            DocumentAnalyzer(client=client).analyze(b"text", "text/plain")

    def test_invalid_field_falls_back(self):
        client, _ = fake_client(json.dumps({"analyzedAt": "sometime last week"}))
        record = analyze_or_fallback(DocumentAnalyzer(client=client), b"text", "text/plain")
        assert record.analysis_success is False


def test_prompt_without_context():
    prompt = build_prompt("body text")
    assert "TASK CONTEXT" not in prompt
    assert "body text" in prompt
