"""
Analysis Aggregator Node - Consolidated Loan Summary from a Document Batch

Two-stage protocol against the language-model service:

1. Per-document: one structured-extraction call per document, run in
   parallel on a thread pool
2. Consolidation: after every per-document call has finished, exactly one
   call over the whole collection produces loan/property/contact/task
   candidates and a missing-document list

Both stages share one BackoffPolicy. Exhausting it raises
RateLimitExhausted; any other service failure (timeouts included) raises
AnalysisServiceError. There is no degraded fallback extractor.

The result is advisory. Nothing here touches a loan's checklist.
"""

import json
import logging
import os
import re
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

from errors import AnalysisServiceError, RateLimitExhausted
from nodes.classifier import classify
from retry import BackoffPolicy, call_with_backoff
from state import IngestedDocument, LoanFileState

logger = logging.getLogger(__name__)


# ============================================================================
# Response Schemas
# ============================================================================

_CURRENCY_CHARS = re.compile(r"[^\d.\-]")


def _coerce_amount(value: Any) -> Optional[float]:
    """Currency strings like $1,250,000.00 become floats; unparseable values become None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    cleaned = _CURRENCY_CHARS.sub("", str(value))
    try:
        return float(cleaned) if cleaned else None
    except ValueError:
        return None


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def _as_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


class _Lenient(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class DocumentExtraction(_Lenient):
    """Per-document response: a type hint from the model plus free-form fields."""
    document_type: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("document_type", "documentType")
    )
    fields: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _collect_loose_fields(cls, data: Any) -> Any:
        # Models often return the fields at top level instead of under "fields".
        if isinstance(data, dict) and "fields" not in data:
            loose = {k: v for k, v in data.items() if k not in ("document_type", "documentType")}
            return {
                "document_type": data.get("document_type", data.get("documentType")),
                "fields": loose,
            }
        return data


class LoanInfo(_Lenient):
    borrower_name: Optional[str] = Field(default=None, validation_alias=AliasChoices("borrower_name", "borrowerName"))
    loan_amount: Optional[float] = Field(default=None, validation_alias=AliasChoices("loan_amount", "loanAmount"))
    loan_type: Optional[str] = Field(default=None, validation_alias=AliasChoices("loan_type", "loanType"))
    loan_purpose: Optional[str] = Field(default=None, validation_alias=AliasChoices("loan_purpose", "loanPurpose"))
    status: Optional[str] = None
    target_close_date: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("target_close_date", "targetCloseDate")
    )

    @field_validator("loan_amount", mode="before")
    @classmethod
    def _amount(cls, v: Any) -> Optional[float]:
        return _coerce_amount(v)

    @field_validator("borrower_name", "loan_type", "loan_purpose", "status", "target_close_date", mode="before")
    @classmethod
    def _text(cls, v: Any) -> Optional[str]:
        return _as_text(v)


class PropertyInfo(_Lenient):
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = Field(default=None, validation_alias=AliasChoices("zip_code", "zipCode", "zip"))
    property_type: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("property_type", "propertyType")
    )

    @field_validator("address", "city", "state", "zip_code", "property_type", mode="before")
    @classmethod
    def _text(cls, v: Any) -> Optional[str]:
        return _as_text(v)


class ContactCandidate(_Lenient):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    company: Optional[str] = None
    role: Optional[str] = None

    @field_validator("name", "email", "phone", "company", "role", mode="before")
    @classmethod
    def _text(cls, v: Any) -> Optional[str]:
        return _as_text(v)


class TaskCandidate(_Lenient):
    description: str = ""
    due_date: Optional[str] = Field(default=None, validation_alias=AliasChoices("due_date", "dueDate"))
    priority: str = "medium"

    @field_validator("description", "priority", mode="before")
    @classmethod
    def _text(cls, v: Any) -> str:
        return "" if v is None else str(v)

    @field_validator("due_date", mode="before")
    @classmethod
    def _date(cls, v: Any) -> Optional[str]:
        return _as_text(v)


class DocumentSummary(_Lenient):
    name: str = ""
    category: Optional[str] = None
    document_type: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("document_type", "documentType", "type")
    )

    @model_validator(mode="before")
    @classmethod
    def _from_string(cls, data: Any) -> Any:
        if isinstance(data, str):
            return {"name": data}
        return data


class DocumentAnalysis(BaseModel):
    """Single-document result: type label plus extracted fields."""
    name: str
    file_ref: Optional[str] = None
    mime_type: str = "application/octet-stream"
    size_bytes: int = 0
    document_type: str
    extracted_fields: Dict[str, Any] = Field(default_factory=dict)


class ConsolidatedAnalysis(_Lenient):
    """Consolidation response as returned by the model."""
    loan_info: LoanInfo = Field(default_factory=LoanInfo, validation_alias=AliasChoices("loan_info", "loanInfo"))
    property_info: PropertyInfo = Field(
        default_factory=PropertyInfo, validation_alias=AliasChoices("property_info", "propertyInfo")
    )
    contacts: List[ContactCandidate] = Field(
        default_factory=list, validation_alias=AliasChoices("contacts", "contactInfo", "contact_info")
    )
    tasks: List[TaskCandidate] = Field(
        default_factory=list, validation_alias=AliasChoices("tasks", "taskInfo", "task_info")
    )
    documents: List[DocumentSummary] = Field(
        default_factory=list, validation_alias=AliasChoices("documents", "documentInfo", "document_info")
    )
    missing_documents: List[str] = Field(
        default_factory=list, validation_alias=AliasChoices("missing_documents", "missingDocuments")
    )

    @field_validator("loan_info", "property_info", mode="before")
    @classmethod
    def _object(cls, v: Any) -> Any:
        return v if isinstance(v, dict) else {}

    @field_validator("contacts", "tasks", "documents", mode="before")
    @classmethod
    def _list(cls, v: Any) -> List[Any]:
        return _as_list(v)

    @field_validator("missing_documents", mode="before")
    @classmethod
    def _names(cls, v: Any) -> List[str]:
        names = []
        for item in _as_list(v):
            if isinstance(item, dict):
                item = item.get("name") or item.get("document") or next(iter(item.values()), "")
            if item:
                names.append(str(item))
        return names


class BatchAnalysisResult(ConsolidatedAnalysis):
    """Consolidated summary plus the per-document analyses it was built from."""
    document_analyses: List[DocumentAnalysis] = Field(default_factory=list)


# ============================================================================
# Prompts
# ============================================================================

DOCUMENT_SYSTEM_PROMPT = """You are an expert loan document analyzer specialized in DSCR real estate loans.
Your task is to extract key information from loan documents.

Respond in JSON format:
{
    "document_type": "<what kind of document this is>",
    "fields": {<every relevant field you found, e.g. borrower_name, entity_name, loan_amount,
               property_address, policy_number, coverage_amount, account_balance, contact details>}
}"""

CONSOLIDATION_SYSTEM_PROMPT = """You are an expert loan processor who organizes information from loan documents.
Consolidate the per-document analyses you are given into one loan summary.

Respond in JSON format:
{
    "loan_info": {"borrower_name", "loan_amount", "loan_type", "loan_purpose", "status", "target_close_date"},
    "property_info": {"address", "city", "state", "zip_code", "property_type"},
    "contacts": [{"name", "email", "phone", "company", "role"}],
    "tasks": [{"description", "due_date", "priority"}],
    "documents": [{"name", "category", "document_type"}],
    "missing_documents": ["<standard DSCR loan documents not present>"]
}
Use null for anything you cannot determine."""


# ============================================================================
# Analyzer
# ============================================================================

@dataclass
class AnalyzerConfig:
    """Configuration for batch analysis."""
    max_workers: int = 4
    document_text_limit: int = 20000  # chars sent in a per-document call
    consolidation_text_ceiling: int = 1000  # chars of each document's text in the consolidation prompt
    temperature: float = 0.1
    document_max_tokens: int = 1500
    consolidation_max_tokens: int = 3000

    @classmethod
    def from_env(cls) -> "AnalyzerConfig":
        return cls(max_workers=int(os.getenv("ANALYZER_MAX_WORKERS", "4")))


def truncate_text(text: str, ceiling: int) -> str:
    if len(text) <= ceiling:
        return text
    return text[:ceiling] + "\n[truncated]"


class DocumentAnalyzer:
    """
    Runs the per-document and consolidation stages.

    Args:
        llm_service: Object with complete_json(system, user, schema, temperature, max_tokens)
        policy: Shared backoff policy for rate-limited calls
        config: Analyzer settings
        sleep_func: Sleep function (injectable for testing)
    """

    def __init__(
        self,
        llm_service: Any,
        policy: Optional[BackoffPolicy] = None,
        config: Optional[AnalyzerConfig] = None,
        sleep_func: Callable[[float], None] = time.sleep,
    ):
        self.llm_service = llm_service
        self.policy = policy or BackoffPolicy.from_env()
        self.config = config or AnalyzerConfig.from_env()
        self.sleep_func = sleep_func

    def _call(
        self,
        operation: Callable[[], Any],
        stage: str,
        loan_id: Optional[str] = None,
        document_id: Optional[str] = None,
        label: Optional[str] = None,
    ) -> Any:
        """Run one service call under the backoff policy, attaching context to failures."""
        label = label or document_id
        try:
            return call_with_backoff(
                operation,
                self.policy,
                operation_name=f"{stage} ({label})" if label else stage,
                sleep_func=self.sleep_func,
            )
        except RateLimitExhausted as e:
            raise RateLimitExhausted(
                e.message, attempts=e.attempts, loan_id=loan_id, document_id=document_id, stage=stage
            ) from e
        except AnalysisServiceError as e:
            raise AnalysisServiceError(
                e.message, loan_id=loan_id, document_id=document_id, stage=stage
            ) from e
        except Exception as e:
            raise AnalysisServiceError(
                f"Analysis service failed: {e}", loan_id=loan_id, document_id=document_id, stage=stage
            ) from e

    def analyze_document(
        self,
        document: IngestedDocument,
        loan_id: Optional[str] = None,
    ) -> DocumentAnalysis:
        """Per-document stage for one document."""
        name = document.get("name", "")
        text = document.get("text", "") or ""
        document_type = document.get("document_type") or classify(name, text).value

        user_prompt = (
            f'This is a {document_type} document titled "{name}".\n'
            "Extract all relevant information: borrower and entity details, contacts, "
            "property details, loan amounts and terms, insurance and title details.\n\n"
            f"Document text:\n{truncate_text(text, self.config.document_text_limit)}"
        )
        extraction: DocumentExtraction = self._call(
            lambda: self.llm_service.complete_json(
                DOCUMENT_SYSTEM_PROMPT,
                user_prompt,
                DocumentExtraction,
                temperature=self.config.temperature,
                max_tokens=self.config.document_max_tokens,
            ),
            stage="document_analysis",
            loan_id=loan_id,
            document_id=document.get("document_id"),
            label=name,
        )
        return DocumentAnalysis(
            name=name,
            file_ref=document.get("document_id") or document.get("remote_id") or document.get("path"),
            mime_type=document.get("mime_type") or "application/octet-stream",
            size_bytes=int(document.get("size_bytes") or 0),
            document_type=document_type,
            extracted_fields=extraction.fields,
        )

    def analyze_batch(
        self,
        documents: Sequence[IngestedDocument],
        loan_id: Optional[str] = None,
    ) -> BatchAnalysisResult:
        """
        Analyze a batch of documents into one consolidated summary.

        Raises:
            ValueError: If the batch is empty
            RateLimitExhausted: If either stage runs out of retries
            AnalysisServiceError: On any other service failure
        """
        if not documents:
            raise ValueError("Cannot analyze an empty document batch")

        logger.info(f"Analyzing {len(documents)} documents for loan {loan_id}")

        workers = max(1, min(self.config.max_workers, len(documents)))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = [executor.submit(self.analyze_document, doc, loan_id) for doc in documents]
            # Join point: consolidation waits for every per-document call.
            analyses = [future.result() for future in futures]

        # analyses line up with documents by position; names need not be unique
        collection = [
            {
                "name": a.name,
                "document_type": a.document_type,
                "mime_type": a.mime_type,
                "size_bytes": a.size_bytes,
                "extracted_fields": a.extracted_fields,
                "text_excerpt": truncate_text(doc.get("text", "") or "", self.config.consolidation_text_ceiling),
            }
            for a, doc in zip(analyses, documents)
        ]
        user_prompt = (
            "I've analyzed the following loan documents. Consolidate them into loan information, "
            "property information, contacts, open tasks, the documents found, and standard loan "
            "documents that are missing.\n\n"
            f"Here are the document analyses:\n{json.dumps(collection, indent=2, default=str)}"
        )
        consolidated: ConsolidatedAnalysis = self._call(
            lambda: self.llm_service.complete_json(
                CONSOLIDATION_SYSTEM_PROMPT,
                user_prompt,
                ConsolidatedAnalysis,
                temperature=self.config.temperature,
                max_tokens=self.config.consolidation_max_tokens,
            ),
            stage="consolidation",
            loan_id=loan_id,
        )

        logger.info(
            f"Consolidated loan {loan_id}: {len(consolidated.contacts)} contacts, "
            f"{len(consolidated.tasks)} tasks, {len(consolidated.missing_documents)} missing documents"
        )
        return BatchAnalysisResult(
            **consolidated.model_dump(),
            document_analyses=analyses,
        )


# ============================================================================
# Main Node Function
# ============================================================================

def analyze_node(state: LoanFileState, analyzer: DocumentAnalyzer) -> dict:
    """
    Node: Analysis Aggregator

    Stores the batch summary in state as advisory output. Service failures
    mark the run Failed with the error recorded; the checklist is never
    touched here.
    """
    logger.info("--- NODE: Analyzer ---")

    documents = state.get("documents", [])
    errors = list(state.get("errors", []))
    if not documents:
        errors.append("No documents to analyze")
        return {"status": "Needs_Review", "errors": errors}

    try:
        result = analyzer.analyze_batch(documents, loan_id=state.get("loan_id"))
    except (RateLimitExhausted, AnalysisServiceError) as e:
        logger.error(f"Batch analysis failed: {e}")
        errors.append(str(e))
        return {"status": "Failed", "errors": errors}

    return {
        "status": "Analyzed",
        "analysis": result.model_dump(),
        "missing_docs": result.missing_documents,
        "errors": errors,
    }
