"""
Mailbox Listener Node - Loan Documents from Email Attachments

Connects to an IMAP inbox, picks up unseen messages from allowed senders and
captures their supported attachments (PDF, images, office formats) as
mailbox-attachment Documents on a loan. The sender address is recorded as
the document's source detail so exact-duplicate detection can tell two
senders' copies apart.

Connection failures are retried with the shared backoff policy.
"""

import imaplib
import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set

from imap_tools.mailbox import MailBox
from imap_tools.message import MailMessage
from imap_tools.query import AND

from errors import RateLimitExhausted, RemoteSyncFailure
from retry import BackoffPolicy, call_with_backoff
from state import Document, IngestedDocument, LoanFileState, OriginService

logger = logging.getLogger(__name__)


SUPPORTED_ATTACHMENT_TYPES: Dict[str, str] = {
    ".pdf": "application/pdf",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".tif": "image/tiff",
    ".tiff": "image/tiff",
    ".docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    ".doc": "application/msword",
    ".xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    ".xls": "application/vnd.ms-excel",
    ".txt": "text/plain",
    ".csv": "text/csv",
}


# ============================================================================
# Configuration
# ============================================================================

def _split_list(value: str) -> List[str]:
    return [d.strip().lower() for d in value.split(",") if d.strip()]


@dataclass
class MailboxConfig:
    """IMAP connection and filtering settings."""
    host: str = "imap.gmail.com"
    port: int = 993
    username: str = ""
    password: str = ""  # App password for Gmail
    inbox_folder: str = "INBOX"
    sender_allowlist: List[str] = field(default_factory=list)
    sender_blocklist: List[str] = field(default_factory=list)
    min_attachment_size: int = 1024  # skip tiny/empty files
    max_attachment_size: int = 50 * 1024 * 1024
    fetch_limit: int = 25
    timeout: float = 30.0  # seconds, applied to the IMAP socket

    @classmethod
    def from_env(cls) -> "MailboxConfig":
        return cls(
            host=os.getenv("IMAP_HOST", "imap.gmail.com"),
            port=int(os.getenv("IMAP_PORT", "993")),
            username=os.getenv("IMAP_USERNAME", ""),
            password=os.getenv("IMAP_PASSWORD", ""),
            inbox_folder=os.getenv("IMAP_INBOX", "INBOX"),
            sender_allowlist=_split_list(os.getenv("IMAP_SENDER_ALLOWLIST", "")),
            sender_blocklist=_split_list(os.getenv("IMAP_SENDER_BLOCKLIST", "")),
            fetch_limit=int(os.getenv("IMAP_FETCH_LIMIT", "25")),
            timeout=float(os.getenv("IMAP_TIMEOUT_SECONDS", "30")),
        )

    def is_valid(self) -> bool:
        """Check if required credentials are configured."""
        return bool(self.username and self.password and self.host)


# ============================================================================
# Filtering
# ============================================================================

def sender_address(sender: Optional[str]) -> str:
    """
    Bare lowercase address from a From header.

    Examples:
        "Jane Doe <Jane@Escrow.com>" -> "jane@escrow.com"
    """
    if not sender:
        return ""
    if "<" in sender and ">" in sender:
        sender = sender[sender.rfind("<") + 1:sender.rfind(">")]
    return sender.strip().lower()


def extract_domain(email_address: Optional[str]) -> str:
    address = sender_address(email_address)
    if "@" in address:
        return address.split("@")[-1]
    return ""


def is_sender_allowed(sender: Optional[str], config: MailboxConfig) -> bool:
    """
    Allowlist wins when set; otherwise the blocklist filters. Senders with no
    parseable domain are allowed.
    """
    domain = extract_domain(sender)
    if not domain:
        return True

    if config.sender_allowlist:
        allowed = domain in config.sender_allowlist
        if not allowed:
            logger.info(f"Filtered out (not in allowlist): {sender}")
        return allowed

    if domain in config.sender_blocklist:
        logger.info(f"Filtered out (in blocklist): {sender}")
        return False
    return True


def attachment_mime_type(filename: Optional[str]) -> Optional[str]:
    """Mime type for a supported attachment, None for anything else."""
    if not filename:
        return None
    return SUPPORTED_ATTACHMENT_TYPES.get(Path(filename).suffix.lower())


def is_network_error(exc: BaseException) -> bool:
    """Connection-level IMAP failures worth retrying (not auth errors)."""
    return isinstance(exc, (OSError, imaplib.IMAP4.abort))


# ============================================================================
# Capture
# ============================================================================

def capture_attachments(
    msg: MailMessage,
    loan_id: str,
    store: Any,
    config: MailboxConfig,
    known_keys: Set[tuple],
) -> List[Document]:
    """
    Save a message's supported attachments as loan documents.

    Attachments whose (normalized name, size, source) key matches a live
    document already on the loan are skipped. `known_keys` is updated in place.
    """
    sender = sender_address(msg.from_)
    captured = []
    for att in msg.attachments:
        mime_type = attachment_mime_type(att.filename)
        if mime_type is None:
            continue

        size = len(att.payload)
        if size < config.min_attachment_size or size > config.max_attachment_size:
            logger.info(f"Skipping {att.filename}: size {size:,} bytes outside limits")
            continue

        document = Document(
            loan_id=loan_id,
            name=att.filename,
            size_bytes=size,
            origin_service=OriginService.MAILBOX_ATTACHMENT,
            mime_type=mime_type,
            source_detail=sender or None,
        )
        if document.dedup_key in known_keys:
            logger.info(f"Skipping {att.filename} from {sender}: already on loan {loan_id}")
            continue

        document.source_file_ref = store.write_file(loan_id, att.filename, att.payload)
        store.save_document(document)
        known_keys.add(document.dedup_key)
        captured.append(document)
        logger.info(f"Captured attachment {att.filename} ({size:,} bytes) from {sender}")

    return captured


def _fetch_from_mailbox(
    loan_id: str,
    store: Any,
    config: MailboxConfig,
    mailbox_factory: Callable[..., Any],
) -> List[Document]:
    """One connect-and-fetch pass. Raises on connection failures for retry handling."""
    captured: List[Document] = []
    known_keys = {d.dedup_key for d in store.list_documents(loan_id)}

    with mailbox_factory(config.host, config.port, timeout=config.timeout).login(
        config.username,
        config.password,
        initial_folder=config.inbox_folder,
    ) as mailbox:
        logger.info(f"Connected to {config.host}, checking {config.inbox_folder}")
        for msg in mailbox.fetch(AND(seen=False), limit=config.fetch_limit, mark_seen=False):
            if not is_sender_allowed(msg.from_, config):
                continue
            if not any(attachment_mime_type(att.filename) for att in msg.attachments):
                continue

            captured.extend(capture_attachments(msg, loan_id, store, config, known_keys))
            if msg.uid:
                mailbox.flag(msg.uid, ["\\Seen"], True)

    return captured


def fetch_mailbox_documents(
    loan_id: str,
    store: Any,
    config: Optional[MailboxConfig] = None,
    policy: Optional[BackoffPolicy] = None,
    sleep_func: Callable[[float], None] = time.sleep,
    mailbox_factory: Optional[Callable[..., Any]] = None,
) -> List[Document]:
    """
    Capture attachments from unseen messages onto a loan.

    Raises:
        RemoteSyncFailure: If the mailbox stays unreachable after all retries
    """
    config = config or MailboxConfig.from_env()
    policy = policy or BackoffPolicy.from_env()
    mailbox_factory = mailbox_factory or MailBox
    try:
        return call_with_backoff(
            lambda: _fetch_from_mailbox(loan_id, store, config, mailbox_factory),
            policy,
            operation_name="IMAP fetch",
            sleep_func=sleep_func,
            retryable=is_network_error,
        )
    except RateLimitExhausted as e:
        raise RemoteSyncFailure(
            f"Mailbox {config.host} unreachable after {e.attempts} attempts",
            loan_id=loan_id,
            stage="mailbox",
        ) from e


# ============================================================================
# Main Node Function
# ============================================================================

def to_ingested(document: Document, store: Any) -> IngestedDocument:
    path = store.file_path(document.loan_id, document.source_file_ref) if document.source_file_ref else None
    return {
        "document_id": document.id,
        "name": document.name,
        "mime_type": document.mime_type,
        "size_bytes": document.size_bytes,
        "path": str(path) if path else None,
        "remote_id": document.remote_id,
    }


def mailbox_intake_node(
    state: LoanFileState,
    store: Any,
    config: Optional[MailboxConfig] = None,
) -> dict:
    """
    Node: Mailbox Intake

    Pulls new attachments for the loan and queues them for extraction.
    """
    logger.info("--- NODE: Mailbox Intake ---")

    config = config or MailboxConfig.from_env()
    if not config.is_valid():
        logger.info("No IMAP credentials configured; skipping mailbox intake")
        return {}

    loan_id = state["loan_id"]
    try:
        captured = fetch_mailbox_documents(loan_id, store, config)
    except RemoteSyncFailure as e:
        logger.error(str(e))
        return {"errors": list(state.get("errors", [])) + [str(e)]}

    if not captured:
        logger.info("No new attachments found")
        return {}

    return {
        "email_metadata": {"sender": captured[0].source_detail or "", "account_id": config.username},
        "documents": [to_ingested(d, store) for d in captured],
        "status": "Processing",
    }
