"""
Loan file storage using JSON files.

Layout under the storage root:
    <loan_id>/documents/<document_id>.json
    <loan_id>/checklist.json
    <loan_id>/files/<file_ref>

Each entity is written atomically (temp file + rename). Any I/O or decode
failure surfaces as PersistenceError.
"""
import json
import logging
import os
import re
import tempfile
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

from errors import PersistenceError
from state import Document

logger = logging.getLogger(__name__)

DEFAULT_STORAGE_DIR = Path(__file__).parent / "storage" / "loans"

_SAFE_NAME = re.compile(r"[^A-Za-z0-9._-]+")


def _safe(component: str) -> str:
    return _SAFE_NAME.sub("_", str(component)).strip("._") or "_"


class LoanStore:
    """JSON-file persistence for documents, checklist state and retained bytes."""

    def __init__(self, root: Optional[str] = None):
        self.root = Path(root or os.getenv("LOAN_STORAGE_DIR") or DEFAULT_STORAGE_DIR)

    # ========================================================================
    # Paths & low-level IO
    # ========================================================================

    def _loan_dir(self, loan_id: str) -> Path:
        return self.root / _safe(loan_id)

    def _document_path(self, loan_id: str, document_id: str) -> Path:
        return self._loan_dir(loan_id) / "documents" / f"{_safe(document_id)}.json"

    def _files_dir(self, loan_id: str) -> Path:
        return self._loan_dir(loan_id) / "files"

    def _write_json(self, path: Path, data: Dict[str, Any], loan_id: str) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
            try:
                with os.fdopen(fd, "w") as f:
                    json.dump(data, f, indent=2, default=str)
                os.replace(tmp_path, path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise
        except (OSError, TypeError, ValueError) as e:
            raise PersistenceError(f"Failed to write {path.name}: {e}", loan_id=loan_id) from e

    def _read_json(self, path: Path, loan_id: str) -> Optional[Dict[str, Any]]:
        if not path.exists():
            return None
        try:
            with open(path, "r") as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise PersistenceError(f"Failed to read {path.name}: {e}", loan_id=loan_id) from e

    # ========================================================================
    # Documents
    # ========================================================================

    def save_document(self, document: Document) -> Document:
        self._write_json(
            self._document_path(document.loan_id, document.id),
            document.to_dict(),
            document.loan_id,
        )
        return document

    def get_document(self, loan_id: str, document_id: str) -> Optional[Document]:
        data = self._read_json(self._document_path(loan_id, document_id), loan_id)
        if data is None:
            return None
        return Document.from_dict(data)

    def list_documents(self, loan_id: str, include_deleted: bool = False) -> List[Document]:
        """Documents for a loan, oldest upload first."""
        documents_dir = self._loan_dir(loan_id) / "documents"
        if not documents_dir.exists():
            return []

        documents = []
        for path in documents_dir.glob("*.json"):
            data = self._read_json(path, loan_id)
            if data is None:
                continue
            document = Document.from_dict(data)
            if include_deleted or document.is_live:
                documents.append(document)

        documents.sort(key=lambda d: (d.uploaded_at, d.id))
        return documents

    def delete_document(self, loan_id: str, document_id: str) -> bool:
        """Hard delete a document record and its retained bytes."""
        document = self.get_document(loan_id, document_id)
        if document is None:
            return False
        try:
            if document.source_file_ref:
                self.delete_file(loan_id, document.source_file_ref)
            self._document_path(loan_id, document_id).unlink()
        except OSError as e:
            raise PersistenceError(f"Failed to delete document: {e}",
                                   loan_id=loan_id, document_id=document_id) from e
        logger.info(f"Permanently deleted document {document_id} for loan {loan_id}")
        return True

    # ========================================================================
    # Retained bytes
    # ========================================================================

    def write_file(self, loan_id: str, name: str, data: bytes) -> str:
        """Retain a document's bytes; returns the file reference."""
        file_ref = f"{uuid.uuid4().hex[:12]}_{_safe(name)}"
        path = self._files_dir(loan_id) / file_ref
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as e:
            raise PersistenceError(f"Failed to store file {name}: {e}", loan_id=loan_id) from e
        return file_ref

    def read_file(self, loan_id: str, file_ref: Optional[str]) -> Optional[bytes]:
        """Retained bytes, or None when they were never stored or are gone."""
        if not file_ref:
            return None
        path = self._files_dir(loan_id) / _safe(file_ref)
        if not path.exists():
            return None
        try:
            return path.read_bytes()
        except OSError as e:
            raise PersistenceError(f"Failed to read file {file_ref}: {e}", loan_id=loan_id) from e

    def file_path(self, loan_id: str, file_ref: str) -> Path:
        return self._files_dir(loan_id) / _safe(file_ref)

    def delete_file(self, loan_id: str, file_ref: str) -> None:
        path = self._files_dir(loan_id) / _safe(file_ref)
        if path.exists():
            path.unlink()

    # ========================================================================
    # Checklist state (assignments, completion, custom requirements)
    # ========================================================================

    def load_checklist(self, loan_id: str) -> Dict[str, Any]:
        data = self._read_json(self._loan_dir(loan_id) / "checklist.json", loan_id)
        return data or {"assignments": {}, "completed": [], "custom_requirements": []}

    def save_checklist(self, loan_id: str, snapshot: Dict[str, Any]) -> None:
        self._write_json(self._loan_dir(loan_id) / "checklist.json", snapshot, loan_id)
