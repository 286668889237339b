"""
Unit Tests for the Analysis Aggregator

The language-model service is replaced by a scripted fake so the two-stage
protocol (per-document calls, then one consolidation call) can be checked
without network access.

Run with: pytest tests/test_analyzer.py -v
"""

import threading
from typing import Dict, List

import pytest

from errors import AnalysisServiceError, RateLimitExhausted
from nodes.analyzer import (
    AnalyzerConfig,
    BatchAnalysisResult,
    ConsolidatedAnalysis,
    DocumentAnalyzer,
    DocumentExtraction,
    analyze_node,
    truncate_text,
)
from retry import BackoffPolicy
from state import initial_state


class RateLimited(Exception):
    status_code = 429


class FakeLLMService:
    """
    Answers complete_json from scripted responses.

    Per-document responses are keyed by document name; each entry is a list
    consumed in order, where an Exception instance is raised instead of returned.
    """

    def __init__(self, documents: Dict[str, List], consolidation: List):
        self.documents = {name: list(steps) for name, steps in documents.items()}
        self.consolidation = list(consolidation)
        self.calls: List[str] = []
        self._lock = threading.Lock()

    def complete_json(self, system, user, schema, temperature=None, max_tokens=None):
        with self._lock:
            if schema is ConsolidatedAnalysis:
                self.calls.append("consolidation")
                step = self.consolidation.pop(0)
            else:
                name = next(n for n in self.documents if f'"{n}"' in user)
                self.calls.append(name)
                step = self.documents[name].pop(0)
        if isinstance(step, Exception):
            raise step
        return schema.model_validate(step)


CONSOLIDATED = {
    "loanInfo": {"borrowerName": "Maple Holdings LLC", "loanAmount": "$1,250,000.00"},
    "property_info": {"address": "12 Elm St", "zip": 30301},
    "contacts": {"name": "Jane Agent", "role": "Title"},
    "tasks": [{"description": "Order appraisal", "dueDate": "2024-06-01"}],
    "documents": ["Appraisal.pdf"],
    "missing_documents": [{"name": "Voided Check"}, "Bank Statements"],
}


@pytest.fixture
def documents():
    return [
        {"document_id": "d1", "name": "Appraisal.pdf", "mime_type": "application/pdf",
         "size_bytes": 2048, "text": "Appraised value $1,600,000", "document_type": "Property Appraisal"},
        {"document_id": "d2", "name": "OA.pdf", "mime_type": "application/pdf",
         "size_bytes": 1024, "text": "OPERATING AGREEMENT OF MAPLE HOLDINGS LLC"},
    ]


@pytest.fixture
def sleeps():
    return []


def make_analyzer(llm, sleeps, max_retries=5):
    return DocumentAnalyzer(
        llm,
        policy=BackoffPolicy(max_retries=max_retries, base_delay=1.0),
        config=AnalyzerConfig(max_workers=2),
        sleep_func=sleeps.append,
    )


# ============================================================================
# Test: Two-stage batch analysis
# ============================================================================

class TestAnalyzeBatch:

    def test_rate_limited_document_is_retried_and_included(self, documents, sleeps):
        """Second document hits three 429s, then succeeds; both are in the result."""
        llm = FakeLLMService(
            documents={
                "Appraisal.pdf": [{"fields": {"appraised_value": 1600000}}],
                "OA.pdf": [RateLimited(), RateLimited(), RateLimited(), {"entity_name": "Maple Holdings LLC"}],
            },
            consolidation=[CONSOLIDATED],
        )

        result = make_analyzer(llm, sleeps).analyze_batch(documents, loan_id="L1")

        assert isinstance(result, BatchAnalysisResult)
        assert sleeps == [1.0, 2.0, 4.0]
        fields = {a.name: a.extracted_fields for a in result.document_analyses}
        assert fields == {
            "Appraisal.pdf": {"appraised_value": 1600000},
            "OA.pdf": {"entity_name": "Maple Holdings LLC"},
        }

    def test_consolidation_runs_once_after_all_documents(self, documents, sleeps):
        llm = FakeLLMService(
            documents={"Appraisal.pdf": [{}], "OA.pdf": [{}]},
            consolidation=[CONSOLIDATED],
        )

        make_analyzer(llm, sleeps).analyze_batch(documents)

        assert llm.calls.count("consolidation") == 1
        assert llm.calls[-1] == "consolidation"

    def test_document_type_falls_back_to_classifier(self, documents, sleeps):
        llm = FakeLLMService(
            documents={"Appraisal.pdf": [{}], "OA.pdf": [{}]},
            consolidation=[CONSOLIDATED],
        )

        result = make_analyzer(llm, sleeps).analyze_batch(documents)

        types = [a.document_type for a in result.document_analyses]
        assert types == ["Property Appraisal", "Operating Agreement"]
        assert result.document_analyses[0].file_ref == "d1"
        assert result.document_analyses[0].size_bytes == 2048

    def test_consolidated_fields_are_coerced(self, documents, sleeps):
        llm = FakeLLMService(
            documents={"Appraisal.pdf": [{}], "OA.pdf": [{}]},
            consolidation=[CONSOLIDATED],
        )

        result = make_analyzer(llm, sleeps).analyze_batch(documents)

        assert result.loan_info.borrower_name == "Maple Holdings LLC"
        assert result.loan_info.loan_amount == 1250000.0
        assert result.property_info.zip_code == "30301"
        assert [c.name for c in result.contacts] == ["Jane Agent"]
        assert result.tasks[0].due_date == "2024-06-01"
        assert result.tasks[0].priority == "medium"
        assert result.documents[0].name == "Appraisal.pdf"
        assert result.missing_documents == ["Voided Check", "Bank Statements"]

    def test_same_named_documents_keep_their_own_text(self, sleeps):
        """Two 'scan.pdf' files from different senders each carry their own excerpt."""
        prompts = []

        class RecordingLLMService:
            def complete_json(self, system, user, schema, temperature=None, max_tokens=None):
                if schema is ConsolidatedAnalysis:
                    prompts.append(user)
                return schema.model_validate({})

        documents = [
            {"document_id": "d1", "name": "scan.pdf", "text": "ALPHA insurance"},
            {"document_id": "d2", "name": "scan.pdf", "text": "BRAVO appraisal"},
        ]

        result = make_analyzer(RecordingLLMService(), sleeps).analyze_batch(documents)

        assert [a.file_ref for a in result.document_analyses] == ["d1", "d2"]
        assert '"text_excerpt": "ALPHA insurance"' in prompts[0]
        assert '"text_excerpt": "BRAVO appraisal"' in prompts[0]

    def test_empty_batch_is_rejected(self, sleeps):
        llm = FakeLLMService(documents={}, consolidation=[])

        with pytest.raises(ValueError):
            make_analyzer(llm, sleeps).analyze_batch([])

        assert llm.calls == []


# ============================================================================
# Test: Failures
# ============================================================================

class TestAnalyzeFailures:

    def test_exhaustion_raises_rate_limit_exhausted(self, documents, sleeps):
        llm = FakeLLMService(
            documents={
                "Appraisal.pdf": [{}],
                "OA.pdf": [RateLimited(), RateLimited(), RateLimited()],
            },
            consolidation=[CONSOLIDATED],
        )

        with pytest.raises(RateLimitExhausted) as exc_info:
            make_analyzer(llm, sleeps, max_retries=2).analyze_batch(documents, loan_id="L1")

        assert exc_info.value.loan_id == "L1"
        assert exc_info.value.document_id == "d2"
        assert "OA.pdf" in exc_info.value.message
        assert exc_info.value.stage == "document_analysis"
        assert "consolidation" not in llm.calls

    def test_other_errors_raise_analysis_service_error(self, documents, sleeps):
        llm = FakeLLMService(
            documents={"Appraisal.pdf": [TimeoutError("read timed out")], "OA.pdf": [{}]},
            consolidation=[CONSOLIDATED],
        )

        with pytest.raises(AnalysisServiceError) as exc_info:
            make_analyzer(llm, sleeps).analyze_batch(documents, loan_id="L1")

        assert exc_info.value.document_id == "d1"
        assert sleeps == []

    def test_consolidation_failure_carries_stage(self, documents, sleeps):
        llm = FakeLLMService(
            documents={"Appraisal.pdf": [{}], "OA.pdf": [{}]},
            consolidation=[AnalysisServiceError("Model returned invalid JSON")],
        )

        with pytest.raises(AnalysisServiceError) as exc_info:
            make_analyzer(llm, sleeps).analyze_batch(documents, loan_id="L1")

        assert exc_info.value.stage == "consolidation"
        assert exc_info.value.loan_id == "L1"


# ============================================================================
# Test: Schemas and helpers
# ============================================================================

class TestSchemas:

    def test_loose_fields_are_collected(self):
        extraction = DocumentExtraction.model_validate({"documentType": "Lease", "rent": "$2,000"})

        assert extraction.document_type == "Lease"
        assert extraction.fields == {"rent": "$2,000"}

    def test_unparseable_amount_becomes_none(self):
        analysis = ConsolidatedAnalysis.model_validate({"loan_info": {"loan_amount": "TBD"}})

        assert analysis.loan_info.loan_amount is None

    def test_missing_sections_default_empty(self):
        analysis = ConsolidatedAnalysis.model_validate({"loan_info": None})

        assert analysis.contacts == []
        assert analysis.loan_info.borrower_name is None

    def test_truncate_text(self):
        assert truncate_text("abc", 5) == "abc"
        assert truncate_text("abcdef", 3) == "abc\n[truncated]"


# ============================================================================
# Test: analyze_node
# ============================================================================

class TestAnalyzeNode:

    def test_stores_advisory_result(self, documents, sleeps):
        llm = FakeLLMService(
            documents={"Appraisal.pdf": [{}], "OA.pdf": [{}]},
            consolidation=[CONSOLIDATED],
        )
        state = initial_state("L1", "kiavi")
        state["documents"] = documents
        state["suggested_assignments"] = {"Appraisal": ["d1"]}

        result = analyze_node(state, make_analyzer(llm, sleeps))

        assert result["status"] == "Analyzed"
        assert result["missing_docs"] == ["Voided Check", "Bank Statements"]
        assert result["analysis"]["loan_info"]["loan_amount"] == 1250000.0
        assert "suggested_assignments" not in result

    def test_no_documents_needs_review(self, sleeps):
        result = analyze_node(initial_state("L1"), make_analyzer(FakeLLMService({}, []), sleeps))

        assert result["status"] == "Needs_Review"
        assert result["errors"] == ["No documents to analyze"]

    def test_failure_marks_run_failed(self, documents, sleeps):
        llm = FakeLLMService(
            documents={"Appraisal.pdf": [RuntimeError("provider down")], "OA.pdf": [{}]},
            consolidation=[],
        )
        state = initial_state("L1")
        state["documents"] = documents

        result = analyze_node(state, make_analyzer(llm, sleeps))

        assert result["status"] == "Failed"
        assert "provider down" in result["errors"][0]
