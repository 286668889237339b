"""
Unit Tests for JSON-file loan storage

Run with: pytest tests/test_loan_storage.py -v
"""

import os
from unittest.mock import patch

import pytest

from errors import PersistenceError
from loan_storage import LoanStore
from state import Document, MirrorStatus, OriginService


@pytest.fixture
def store(tmp_path):
    return LoanStore(str(tmp_path))


class TestDocuments:

    def test_save_and_get_round_trip(self, store):
        doc = Document(
            loan_id="L1",
            name="Appraisal.pdf",
            size_bytes=2048,
            origin_service=OriginService.MAILBOX_ATTACHMENT,
            source_detail="agent@title.com",
            remote_id="r-1",
            mirror_status=MirrorStatus.MIRRORED,
        )
        store.save_document(doc)

        loaded = store.get_document("L1", doc.id)

        assert loaded == doc

    def test_get_missing_document_returns_none(self, store):
        assert store.get_document("L1", "nope") is None

    def test_list_excludes_soft_deleted_by_default(self, store):
        live = store.save_document(Document("L1", "a.pdf", 1, uploaded_at="2024-01-01T00:00:00+00:00"))
        gone = store.save_document(Document("L1", "b.pdf", 1, deleted=True, uploaded_at="2024-01-02T00:00:00+00:00"))

        assert [d.id for d in store.list_documents("L1")] == [live.id]
        assert [d.id for d in store.list_documents("L1", include_deleted=True)] == [live.id, gone.id]

    def test_list_is_oldest_first(self, store):
        newer = store.save_document(Document("L1", "n.pdf", 1, uploaded_at="2024-03-01T00:00:00+00:00"))
        older = store.save_document(Document("L1", "o.pdf", 1, uploaded_at="2024-01-01T00:00:00+00:00"))

        assert [d.id for d in store.list_documents("L1")] == [older.id, newer.id]

    def test_loans_are_isolated(self, store):
        store.save_document(Document("L1", "a.pdf", 1))

        assert store.list_documents("L2") == []

    def test_delete_document_removes_record_and_bytes(self, store):
        ref = store.write_file("L1", "a.pdf", b"data")
        doc = store.save_document(Document("L1", "a.pdf", 4, source_file_ref=ref))

        assert store.delete_document("L1", doc.id) is True
        assert store.get_document("L1", doc.id) is None
        assert store.read_file("L1", ref) is None
        assert store.delete_document("L1", doc.id) is False


class TestFiles:

    def test_write_and_read_bytes(self, store):
        ref = store.write_file("L1", "../../etc/passwd", b"payload")

        assert "/" not in ref
        assert store.read_file("L1", ref) == b"payload"

    def test_read_without_ref(self, store):
        assert store.read_file("L1", None) is None


class TestChecklistState:

    def test_default_checklist(self, store):
        assert store.load_checklist("L1") == {"assignments": {}, "completed": [], "custom_requirements": []}

    def test_save_and_load(self, store):
        snapshot = {"assignments": {"Appraisal": ["d1"]}, "completed": ["Appraisal"], "custom_requirements": []}
        store.save_checklist("L1", snapshot)

        assert store.load_checklist("L1") == snapshot

    def test_write_failure_raises_persistence_error(self, store):
        with patch("loan_storage.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(PersistenceError) as exc_info:
                store.save_checklist("L1", {"assignments": {}})

        assert exc_info.value.loan_id == "L1"
        assert store.load_checklist("L1")["assignments"] == {}

    def test_corrupt_file_raises_persistence_error(self, store, tmp_path):
        path = tmp_path / "L1" / "checklist.json"
        path.parent.mkdir(parents=True)
        path.write_text("{not json")

        with pytest.raises(PersistenceError):
            store.load_checklist("L1")


class TestStorageRoot:

    @patch.dict(os.environ, {"LOAN_STORAGE_DIR": "/tmp/loan-files-test"})
    def test_root_from_environment(self):
        assert str(LoanStore().root) == "/tmp/loan-files-test"
