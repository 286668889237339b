"""
Content Extractor Node - Plain Text from Any Loan Document

Every document ends up as one text representation regardless of origin:

- Native text formats are decoded directly
- Images and scans go to an OCR delegate (the vision model)
- PDFs and office formats are converted with Docling to Markdown
- Google Docs/Sheets/Slides that only live in the mirror are exported

Extraction never raises. A failure is logged and recovered as empty text so
the classifier falls back to the filename.
"""

import io
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from errors import ExtractionFailure
from retry import BackoffPolicy, call_with_backoff
from state import IngestedDocument, LoanFileState

logger = logging.getLogger(__name__)

DocumentRef = Union[str, Path, bytes]

TEXT_MIME_TYPES = {
    "application/json",
    "application/xml",
    "application/x-yaml",
}

DOCLING_MIME_TYPES = {
    "application/pdf",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    "application/msword",
    "application/vnd.ms-excel",
}

REMOTE_EXPORT_MIME_TYPES = {
    "application/vnd.google-apps.document",
    "application/vnd.google-apps.spreadsheet",
    "application/vnd.google-apps.presentation",
}

DOCLING_EXTENSIONS = {
    "application/pdf": ".pdf",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": ".docx",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": ".xlsx",
    "application/vnd.openxmlformats-officedocument.presentationml.presentation": ".pptx",
    "application/msword": ".doc",
    "application/vnd.ms-excel": ".xls",
}


@dataclass
class ExtractionResult:
    """Text pulled from one document, with how it was obtained."""
    text: str
    method: str  # "native", "ocr", "docling", "export", "none"
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "text_length": len(self.text),
            "method": self.method,
            "error": self.error,
        }


# ============================================================================
# OCR Delegate
# ============================================================================

class VisionTranscriber:
    """
    OCR delegate backed by the language-model service's vision model.

    Rate-limited calls are retried with the shared backoff policy.
    """

    def __init__(
        self,
        llm_service: Any,
        policy: Optional[BackoffPolicy] = None,
        sleep_func: Callable[[float], None] = time.sleep,
    ):
        self.llm_service = llm_service
        self.policy = policy or BackoffPolicy.from_env()
        self.sleep_func = sleep_func

    def transcribe(self, data: bytes, mime_type: str) -> str:
        return call_with_backoff(
            lambda: self.llm_service.transcribe_image(data, mime_type),
            self.policy,
            operation_name="ocr",
            sleep_func=self.sleep_func,
        )


# ============================================================================
# Extractor
# ============================================================================

def _docling_to_markdown(ref: DocumentRef, mime_type: str) -> str:
    """Convert a PDF or office document to Markdown with Docling."""
    try:
        from docling.datamodel.base_models import DocumentStream
        from docling.document_converter import DocumentConverter
    except ImportError as e:
        raise ExtractionFailure("Docling is not installed", stage="extract") from e

    source: Any = str(ref) if not isinstance(ref, bytes) else DocumentStream(
        name=f"document{DOCLING_EXTENSIONS.get(mime_type, '.pdf')}",
        stream=io.BytesIO(ref),
    )
    result = DocumentConverter().convert(source)
    return result.document.export_to_markdown()


class ContentExtractor:
    """
    Dispatches a document to the right text source by mime type.

    Args:
        ocr: Object with transcribe(data, mime_type) -> str (VisionTranscriber)
        mirror: Remote mirror client with export_text(remote_id, mime_type)
        converter: Callable (ref, mime_type) -> str for PDF/office formats
        policy: Backoff policy for remote export calls
        sleep_func: Sleep function (injectable for testing)
    """

    def __init__(
        self,
        ocr: Optional[Any] = None,
        mirror: Optional[Any] = None,
        converter: Callable[[DocumentRef, str], str] = _docling_to_markdown,
        policy: Optional[BackoffPolicy] = None,
        sleep_func: Callable[[float], None] = time.sleep,
    ):
        self.ocr = ocr
        self.mirror = mirror
        self.converter = converter
        self.policy = policy or BackoffPolicy.from_env()
        self.sleep_func = sleep_func

    def extract(self, ref: DocumentRef, mime_type: str) -> str:
        """Plain text for a document; empty string when nothing could be extracted."""
        return self.extract_with_details(ref, mime_type).text

    def extract_with_details(self, ref: DocumentRef, mime_type: str) -> ExtractionResult:
        mime_type = (mime_type or "").lower().split(";")[0].strip()
        method = self._method_for(mime_type)
        try:
            if method == "native":
                text = self._read_bytes(ref).decode("utf-8", errors="replace")
            elif method == "ocr":
                if self.ocr is None:
                    raise ExtractionFailure("No OCR delegate configured", stage="extract")
                text = self.ocr.transcribe(self._read_bytes(ref), mime_type)
            elif method == "docling":
                text = self.converter(ref, mime_type)
            elif method == "export":
                text = self._export_remote(ref, mime_type)
            else:
                raise ExtractionFailure(f"Unsupported mime type {mime_type or 'unknown'}", stage="extract")
        except Exception as e:
            # Docling, the OCR delegate and the mirror each raise their own types
            return self._failed(ref, method, e)

        return ExtractionResult(text=(text or "").strip(), method=method)

    @staticmethod
    def _method_for(mime_type: str) -> str:
        if mime_type.startswith("text/") or mime_type in TEXT_MIME_TYPES:
            return "native"
        if mime_type.startswith("image/"):
            return "ocr"
        if mime_type in DOCLING_MIME_TYPES:
            return "docling"
        if mime_type in REMOTE_EXPORT_MIME_TYPES:
            return "export"
        return "none"

    @staticmethod
    def _read_bytes(ref: DocumentRef) -> bytes:
        if isinstance(ref, bytes):
            return ref
        return Path(ref).read_bytes()

    def _export_remote(self, ref: DocumentRef, mime_type: str) -> str:
        if self.mirror is None:
            raise ExtractionFailure("No mirror client configured for export", stage="extract")
        if isinstance(ref, bytes):
            raise ExtractionFailure("Remote export needs a remote id", stage="extract")
        return call_with_backoff(
            lambda: self.mirror.export_text(str(ref), mime_type),
            self.policy,
            operation_name="mirror export",
            sleep_func=self.sleep_func,
        )

    @staticmethod
    def _failed(ref: DocumentRef, method: str, error: Exception) -> ExtractionResult:
        label = "<bytes>" if isinstance(ref, bytes) else str(ref)
        logger.warning(f"Extraction failed for {label} via {method}: {error}")
        return ExtractionResult(text="", method=method, error=str(error))


# ============================================================================
# Main Node Function
# ============================================================================

def extract_node(state: LoanFileState, extractor: ContentExtractor) -> dict:
    """
    Node: Content Extractor

    Adds `text` and `extraction_method` to each document. Local files are
    read from `path`; mirror-only Google files are exported by `remote_id`.
    """
    logger.info("--- NODE: Extractor ---")

    extracted: List[IngestedDocument] = []
    errors = list(state.get("errors", []))
    for doc in state.get("documents", []):
        mime_type = doc.get("mime_type", "")
        ref = doc.get("path") or doc.get("remote_id")
        if mime_type in REMOTE_EXPORT_MIME_TYPES and doc.get("remote_id"):
            ref = doc["remote_id"]

        if not ref:
            result = ExtractionResult(text="", method="none", error="No file reference")
        else:
            result = extractor.extract_with_details(ref, mime_type)

        if result.error:
            errors.append(f"Extraction failed for {doc.get('name')}: {result.error}")
        extracted.append({**doc, "text": result.text, "extraction_method": result.method})

    return {"documents": extracted, "errors": errors}
