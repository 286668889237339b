from typing import TypedDict, List, Dict, Optional, Any
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
import re
import uuid

# ============================================================================
# Document Records
# ============================================================================

class OriginService(str, Enum):
    """Where a document entered the loan file."""
    LOCAL_UPLOAD = "local-upload"
    REMOTE_MIRROR = "remote-mirror"
    MAILBOX_ATTACHMENT = "mailbox-attachment"


class MirrorStatus(str, Enum):
    """State of a document's copy in the remote mirror."""
    PENDING = "pending"          # never pushed, or last push failed
    MIRRORED = "mirrored"        # remote_id confirmed
    UNMIRRORED = "unmirrored"    # restored, but no remote copy and no bytes to re-upload


# Download suffix like "Policy Declaration (1).pdf"
DUPLICATE_SUFFIX_PATTERN = re.compile(r"^(.+)\s+\((\d+)\)(\.[^.]+)$")


def normalize_document_name(name: str) -> str:
    """Strip a " (N)" duplicate suffix sitting right before the extension."""
    match = DUPLICATE_SUFFIX_PATTERN.match(name)
    if match:
        return match.group(1) + match.group(3)
    return name


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Document:
    """
    A file that belongs to one loan.

    `deleted` is a soft-delete flag; the record and its retained bytes stay
    until an explicit reset.
    """
    loan_id: str
    name: str
    size_bytes: int
    origin_service: OriginService = OriginService.LOCAL_UPLOAD
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    category: str = "general"
    mime_type: str = "application/octet-stream"
    source_file_ref: Optional[str] = None  # key of the retained bytes in local storage
    source_detail: Optional[str] = None  # e.g. sender address for mailbox attachments
    uploaded_at: str = field(default_factory=utc_now)
    deleted: bool = False
    remote_id: Optional[str] = None
    mirror_status: MirrorStatus = MirrorStatus.PENDING
    document_type: Optional[str] = None

    @property
    def is_live(self) -> bool:
        return not self.deleted

    @property
    def source_key(self) -> str:
        """Origin key used for exact duplicate detection."""
        if self.source_detail:
            return f"{self.origin_service.value}:{self.source_detail}"
        return self.origin_service.value

    @property
    def dedup_key(self) -> tuple:
        return (normalize_document_name(self.name), self.size_bytes, self.source_key)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "loan_id": self.loan_id,
            "name": self.name,
            "size_bytes": self.size_bytes,
            "origin_service": self.origin_service.value,
            "category": self.category,
            "mime_type": self.mime_type,
            "source_file_ref": self.source_file_ref,
            "source_detail": self.source_detail,
            "uploaded_at": self.uploaded_at,
            "deleted": self.deleted,
            "remote_id": self.remote_id,
            "mirror_status": self.mirror_status.value,
            "document_type": self.document_type,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Document":
        return cls(
            id=data["id"],
            loan_id=str(data["loan_id"]),
            name=data["name"],
            size_bytes=int(data.get("size_bytes", 0)),
            origin_service=OriginService(data.get("origin_service", "local-upload")),
            category=data.get("category", "general"),
            mime_type=data.get("mime_type", "application/octet-stream"),
            source_file_ref=data.get("source_file_ref"),
            source_detail=data.get("source_detail"),
            uploaded_at=data.get("uploaded_at") or utc_now(),
            deleted=bool(data.get("deleted", False)),
            remote_id=data.get("remote_id"),
            mirror_status=MirrorStatus(data.get("mirror_status", "pending")),
            document_type=data.get("document_type"),
        )


# ============================================================================
# Pipeline State
# ============================================================================

class IngestedDocument(TypedDict, total=False):
    """
    A document moving through the ingestion graph.
    Filled in stage by stage: extract adds text, classify adds the type label.
    """
    document_id: str
    name: str
    mime_type: str
    size_bytes: int
    path: Optional[str]
    remote_id: Optional[str]
    text: str
    extraction_method: str
    document_type: str
    suggested_requirement: Optional[str]


class LoanFileState(TypedDict):
    """
    The central state of the ingestion graph.
    This dict is passed and updated by every node in the graph.
    """
    # Meta Information
    loan_id: str
    funder_id: str
    status: str  # 'Processing', 'Analyzed', 'Needs_Review', 'Failed'

    # Source Context
    email_metadata: Dict[str, str]  # {'sender': '...', 'subject': '...', 'msg_id': '...'}

    # Documents moving through the pipeline
    documents: List[IngestedDocument]

    # Advisory output (never applied automatically)
    analysis: Optional[Dict[str, Any]]
    suggested_assignments: Dict[str, List[str]]  # requirement name -> document ids
    missing_docs: List[str]

    errors: List[str]


def initial_state(loan_id: str, funder_id: str = "") -> LoanFileState:
    return {
        "loan_id": loan_id,
        "funder_id": funder_id,
        "status": "Processing",
        "email_metadata": {},
        "documents": [],
        "analysis": None,
        "suggested_assignments": {},
        "missing_docs": [],
        "errors": [],
    }
