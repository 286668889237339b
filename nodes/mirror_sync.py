"""
Synchronization Coordinator - Local Store and Remote Mirror

The local store is the primary copy of a loan's documents; the remote mirror
is a backup destination. The rule is expressed as an explicit policy object,
LocalAuthoritative, so it can be read and tested on its own:

- a document soft-deleted locally is never reintroduced from the mirror
- a failed remote call never blocks or reverses a local change
- a remote file still backing a live document is never deleted

Synchronization runs only when explicitly invoked. Every remote call goes
through the shared backoff policy.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

import httpx

from drive_client import GOOGLE_APPS_EXPORT_TYPES, MirrorAPIError
from errors import RateLimitExhausted, RemoteSyncFailure
from retry import BackoffPolicy, call_with_backoff
from state import Document, MirrorStatus, OriginService, normalize_document_name

logger = logging.getLogger(__name__)

# Errors a mirror call may raise that are logged and retried on the next pass
REMOTE_ERRORS = (RateLimitExhausted, MirrorAPIError, httpx.HTTPError, OSError)


# ============================================================================
# Policy
# ============================================================================

class LocalAuthoritative:
    """Directionality rules for sync: local state always wins."""

    name = "local-authoritative"

    def allows_import(self, remote_file: Dict[str, Any], documents: Iterable[Document]) -> bool:
        """
        May a remote file become a new local document?

        Refused when a soft-deleted local document carries the same remote
        id, or has the same exact key (normalized name, size, mirror origin).
        """
        key = (
            normalize_document_name(remote_file.get("name", "")),
            int(remote_file.get("size") or 0),
            OriginService.REMOTE_MIRROR.value,
        )
        for document in documents:
            if not document.deleted:
                continue
            if document.remote_id and document.remote_id == remote_file.get("id"):
                return False
            if document.dedup_key == key:
                return False
        return True

    def may_delete_remote(self, document: Document, documents: Iterable[Document]) -> bool:
        """A remote copy may go only when no live document still points at it."""
        if not document.remote_id:
            return False
        return not any(
            d.is_live and d.id != document.id and d.remote_id == document.remote_id
            for d in documents
        )


# ============================================================================
# Reports
# ============================================================================

@dataclass
class SyncReport:
    """Outcome of one sync operation."""
    operation: str
    loan_id: str
    uploaded: List[str] = field(default_factory=list)
    imported: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failures: List[Dict[str, str]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    def record_failure(self, failure: RemoteSyncFailure) -> None:
        self.failures.append({
            "document_id": failure.document_id or "",
            "error": failure.message,
        })

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation": self.operation,
            "loan_id": self.loan_id,
            "uploaded": self.uploaded,
            "imported": self.imported,
            "deleted": self.deleted,
            "skipped": self.skipped,
            "failures": self.failures,
        }


# ============================================================================
# Coordinator
# ============================================================================

class MirrorSync:
    """
    Keeps a loan's local documents and its mirror folder consistent.

    Args:
        store: Persistence layer (LoanStore)
        mirror: Remote mirror client with upload/delete/exists/list/download
        policy: Directionality policy
        backoff: Shared backoff policy for remote calls
        sleep_func: Sleep function (injectable for testing)
    """

    def __init__(
        self,
        store: Any,
        mirror: Any,
        policy: Optional[LocalAuthoritative] = None,
        backoff: Optional[BackoffPolicy] = None,
        sleep_func: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.mirror = mirror
        self.policy = policy or LocalAuthoritative()
        self.backoff = backoff or BackoffPolicy.from_env()
        self.sleep_func = sleep_func

    def _remote(self, operation: Callable[[], Any], operation_name: str) -> Any:
        return call_with_backoff(operation, self.backoff, operation_name, sleep_func=self.sleep_func)

    def _sync_failure(
        self,
        message: str,
        document: Document,
        stage: str,
        error: BaseException,
    ) -> RemoteSyncFailure:
        failure = RemoteSyncFailure(
            f"{message}: {error}", loan_id=document.loan_id, document_id=document.id, stage=stage
        )
        logger.error(str(failure))
        return failure

    def _get(self, loan_id: str, document_id: str) -> Document:
        document = self.store.get_document(loan_id, document_id)
        if document is None:
            raise KeyError(f"Document {document_id} not found on loan {loan_id}")
        return document

    def _upload(self, document: Document, data: bytes, folder_ref: str) -> str:
        return self._remote(
            lambda: self.mirror.upload(document.name, data, document.mime_type, folder_ref),
            f"upload {document.name}",
        )

    # ------------------------------------------------------------------------
    # Outbound push
    # ------------------------------------------------------------------------

    def push(self, loan_id: str, folder_ref: str) -> SyncReport:
        """
        Upload every live document without a confirmed remote copy.

        A failed upload leaves remote_id unset, so calling push again retries
        exactly the documents that did not make it.
        """
        report = SyncReport("push", loan_id)
        for document in self.store.list_documents(loan_id):
            if document.remote_id and document.mirror_status == MirrorStatus.MIRRORED:
                report.skipped.append(document.id)
                continue

            data = self.store.read_file(loan_id, document.source_file_ref)
            if data is None:
                logger.warning(f"No retained bytes for {document.name}; cannot mirror")
                report.skipped.append(document.id)
                continue

            try:
                remote_id = self._upload(document, data, folder_ref)
            except REMOTE_ERRORS as e:
                report.record_failure(self._sync_failure("Upload failed", document, "push", e))
                continue

            document.remote_id = remote_id
            document.mirror_status = MirrorStatus.MIRRORED
            self.store.save_document(document)
            report.uploaded.append(document.id)

        logger.info(
            f"Push for loan {loan_id}: {len(report.uploaded)} uploaded, "
            f"{len(report.skipped)} skipped, {len(report.failures)} failed"
        )
        return report

    # ------------------------------------------------------------------------
    # Deletion and restore
    # ------------------------------------------------------------------------

    def soft_delete(self, loan_id: str, document_id: str) -> SyncReport:
        """
        Soft-delete locally, then try to delete the remote copy.

        The local delete is committed first. A remote failure is logged and
        reported but never undoes it.
        """
        report = SyncReport("soft_delete", loan_id)
        document = self._get(loan_id, document_id)
        if document.deleted:
            report.skipped.append(document_id)
            return report

        document.deleted = True
        self.store.save_document(document)
        report.deleted.append(document_id)
        logger.info(f"Soft-deleted {document.name} ({document_id}) on loan {loan_id}")

        all_documents = self.store.list_documents(loan_id, include_deleted=True)
        if not self.policy.may_delete_remote(document, all_documents):
            return report

        remote_id = document.remote_id
        try:
            self._remote(lambda: self.mirror.delete(remote_id), f"delete {document.name}")
        except REMOTE_ERRORS as e:
            report.record_failure(self._sync_failure("Remote delete failed", document, "soft_delete", e))
            return report

        document.mirror_status = MirrorStatus.PENDING
        self.store.save_document(document)
        return report

    def restore(self, loan_id: str, document_id: str, folder_ref: str) -> Document:
        """
        Restore a soft-deleted document and re-establish its remote copy.

        If the remote copy is gone the retained bytes are re-uploaded under a
        fresh remote id; with no bytes the document is marked unmirrored.
        """
        document = self._get(loan_id, document_id)
        document.deleted = False
        self.store.save_document(document)
        logger.info(f"Restored {document.name} ({document_id}) on loan {loan_id}")

        try:
            if document.remote_id:
                remote_id = document.remote_id
                if self._remote(lambda: self.mirror.exists(remote_id), f"exists {document.name}"):
                    document.mirror_status = MirrorStatus.MIRRORED
                    self.store.save_document(document)
                    return document

            data = self.store.read_file(loan_id, document.source_file_ref)
            if data is None:
                logger.warning(f"{document.name} restored without a remote copy or retained bytes")
                document.remote_id = None
                document.mirror_status = MirrorStatus.UNMIRRORED
            else:
                document.remote_id = self._upload(document, data, folder_ref)
                document.mirror_status = MirrorStatus.MIRRORED
        except REMOTE_ERRORS as e:
            self._sync_failure("Remote restore failed", document, "restore", e)
            document.mirror_status = MirrorStatus.PENDING

        self.store.save_document(document)
        return document

    # ------------------------------------------------------------------------
    # Deduplication
    # ------------------------------------------------------------------------

    def deduplicate(self, loan_id: str) -> SyncReport:
        """
        Soft-delete exact duplicates, keeping the earliest upload of each.

        Documents are duplicates only when normalized name, byte size and
        source key are all equal. Near matches are left alone.
        """
        report = SyncReport("deduplicate", loan_id)
        groups: Dict[tuple, List[Document]] = {}
        for document in self.store.list_documents(loan_id):
            groups.setdefault(document.dedup_key, []).append(document)

        for key, documents in groups.items():
            if len(documents) < 2:
                continue
            documents.sort(key=lambda d: (d.uploaded_at, d.id))
            keeper = documents[0]
            logger.info(f"Keeping {keeper.name} ({keeper.id}); {len(documents) - 1} duplicates of {key[0]}")
            for duplicate in documents[1:]:
                result = self.soft_delete(loan_id, duplicate.id)
                report.deleted.extend(result.deleted)
                report.failures.extend(result.failures)

        return report

    # ------------------------------------------------------------------------
    # Inbound import
    # ------------------------------------------------------------------------

    def import_from_mirror(self, loan_id: str, folder_ref: str) -> SyncReport:
        """Create local documents for mirror files the loan does not know yet."""
        report = SyncReport("import", loan_id)
        try:
            remote_files = self._remote(lambda: self.mirror.list(folder_ref), "list mirror folder")
        except REMOTE_ERRORS as e:
            failure = RemoteSyncFailure(f"Listing {folder_ref} failed: {e}", loan_id=loan_id, stage="import")
            logger.error(str(failure))
            report.record_failure(failure)
            return report

        documents = self.store.list_documents(loan_id, include_deleted=True)
        known_remote_ids = {d.remote_id for d in documents if d.remote_id}

        for remote_file in remote_files:
            remote_id = remote_file["id"]
            if remote_id in known_remote_ids:
                report.skipped.append(remote_id)
                continue
            if not self.policy.allows_import(remote_file, documents):
                logger.info(f"Not importing {remote_file.get('name')}: deleted locally")
                report.skipped.append(remote_id)
                continue

            document = Document(
                loan_id=loan_id,
                name=remote_file.get("name", remote_id),
                size_bytes=int(remote_file.get("size") or 0),
                origin_service=OriginService.REMOTE_MIRROR,
                mime_type=remote_file.get("mimeType", "application/octet-stream"),
                remote_id=remote_id,
                mirror_status=MirrorStatus.MIRRORED,
            )
            if document.mime_type not in GOOGLE_APPS_EXPORT_TYPES:
                try:
                    data = self._remote(lambda: self.mirror.download(remote_id), f"download {document.name}")
                except REMOTE_ERRORS as e:
                    report.record_failure(self._sync_failure("Download failed", document, "import", e))
                    continue
                document.source_file_ref = self.store.write_file(loan_id, document.name, data)

            self.store.save_document(document)
            documents.append(document)
            known_remote_ids.add(remote_id)
            report.imported.append(document.id)

        logger.info(f"Import for loan {loan_id}: {len(report.imported)} new, {len(report.skipped)} skipped")
        return report

    # ------------------------------------------------------------------------
    # Reset
    # ------------------------------------------------------------------------

    def reset_documents(self, loan_id: str, checklist: Any) -> int:
        """
        Irreversibly delete every document on the loan, live or soft-deleted,
        and clear all requirement assignments. Remote copies are left alone.
        """
        deleted = 0
        for document in self.store.list_documents(loan_id, include_deleted=True):
            if self.store.delete_document(loan_id, document.id):
                deleted += 1
        checklist.clear_assignments()
        logger.warning(f"Reset loan {loan_id}: permanently deleted {deleted} documents")
        return deleted
