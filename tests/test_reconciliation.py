"""
Unit Tests for the Reconciliation Engine

Covers assignment and completion tracking, custom requirements, the
completion summary and the no-partial-mutation guarantee.

Run with: pytest tests/test_reconciliation.py -v
"""

from unittest.mock import patch

import pytest

from errors import PersistenceError
from loan_storage import LoanStore
from reconciliation import (
    ChecklistSnapshot,
    LoanChecklist,
    custom_requirement,
    open_checklist,
    percent,
)
from requirement_catalog import (
    RequirementCategory,
    RequirementDefinition,
    RequirementSet,
    build_default_catalog,
)
from state import Document


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def store(tmp_path):
    return LoanStore(str(tmp_path))


@pytest.fixture
def catalog():
    return build_default_catalog()


@pytest.fixture
def checklist(store, catalog):
    return open_checklist("L1", "kiavi", catalog, store)


@pytest.fixture
def document(store):
    return store.save_document(Document("L1", "appraisal.pdf", 4096))


# ============================================================================
# Test: completion_summary
# ============================================================================

class TestCompletionSummary:

    def test_kiavi_with_no_documents(self, checklist, catalog):
        """Zero uploads: nothing satisfied, all base + Kiavi required counted."""
        summary = checklist.completion_summary()

        assert summary.total_satisfied == 0
        assert summary.total_required == len(catalog.get_requirement_set("kiavi").required())
        assert summary.total_required == 18
        assert summary.percentage == 0

    def test_mark_complete_without_documents_counts(self, checklist):
        checklist.mark_complete("Appraisal")

        summary = checklist.completion_summary()
        assert summary.total_satisfied == 1
        assert checklist.is_satisfied("Appraisal")

    def test_zero_required_is_zero_percent(self, store):
        optional_only = RequirementSet("x", (
            RequirementDefinition("opt", "Optional Thing", RequirementCategory.PAYOFF, required=False),
        ))
        checklist = LoanChecklist("L1", optional_only, store)
        checklist.mark_complete("Optional Thing")

        summary = checklist.completion_summary()
        assert summary.total_required == 0
        assert summary.percentage == 0

    def test_optional_requirements_do_not_count(self, checklist):
        checklist.mark_complete("Payoff Statement")

        assert checklist.completion_summary().total_satisfied == 0

    def test_percentage_rounds_half_up(self):
        assert percent(1, 8) == 13  # 12.5
        assert percent(1, 3) == 33
        assert percent(2, 3) == 67
        assert percent(18, 18) == 100

    def test_percentage_always_in_range(self, checklist):
        for requirement in checklist.requirement_set.required():
            checklist.mark_complete(requirement.display_name)
            assert 0 <= checklist.completion_summary().percentage <= 100
        assert checklist.completion_summary().percentage == 100


# ============================================================================
# Test: assign / unassign
# ============================================================================

class TestAssignment:

    def test_assign_live_document_satisfies(self, checklist, document):
        checklist.assign("Appraisal", document.id)

        assert checklist.is_satisfied("Appraisal")
        assert checklist.completion_summary().total_satisfied == 1

    def test_assign_is_idempotent(self, checklist, document):
        checklist.assign("Appraisal", document.id)
        checklist.assign("Appraisal", document.id)

        assert checklist.assignments == {"Appraisal": {document.id}}

    def test_document_may_back_several_slots(self, checklist, document):
        checklist.assign("Appraisal", document.id)
        checklist.assign("Insurance Policy", document.id)

        assert checklist.completion_summary().total_satisfied == 2

    def test_assign_then_unassign_restores_initial_state(self, checklist, document):
        checklist.mark_complete("Voided Check")
        before = checklist.snapshot()

        checklist.assign("Appraisal", document.id)
        checklist.unassign("Appraisal", document.id)

        assert checklist.snapshot() == before

    def test_unassign_absent_is_noop(self, checklist):
        before = checklist.snapshot()

        checklist.unassign("Appraisal", "missing")

        assert checklist.snapshot() == before

    def test_soft_deleted_document_does_not_satisfy(self, checklist, document, store):
        checklist.assign("Appraisal", document.id)
        document.deleted = True
        store.save_document(document)

        assert not checklist.is_satisfied("Appraisal")

    def test_unknown_requirement_raises_key_error(self, checklist, document):
        with pytest.raises(KeyError):
            checklist.assign("Not A Requirement", document.id)
        with pytest.raises(KeyError):
            checklist.mark_complete("Not A Requirement")

    def test_state_survives_reopen(self, checklist, document, store, catalog):
        checklist.assign("Appraisal", document.id)
        checklist.mark_complete("Voided Check")

        reopened = open_checklist("L1", "kiavi", catalog, store)

        assert reopened.assignments == {"Appraisal": {document.id}}
        assert reopened.completed == {"Voided Check"}


# ============================================================================
# Test: mark_complete / unmark_complete
# ============================================================================

class TestCompletion:

    def test_completion_is_independent_of_assignment(self, checklist, document):
        checklist.assign("Appraisal", document.id)
        checklist.mark_complete("Appraisal")
        checklist.unmark_complete("Appraisal")

        assert checklist.assignments == {"Appraisal": {document.id}}
        assert checklist.is_satisfied("Appraisal")

    def test_unmark_absent_is_noop(self, checklist):
        checklist.unmark_complete("Appraisal")

        assert checklist.completed == set()


# ============================================================================
# Test: Custom requirements
# ============================================================================

class TestCustomRequirements:

    def test_add_appends_required_custom_slot(self, checklist, catalog):
        before = checklist.completion_summary().total_required

        requirement = checklist.add_custom_requirement("Entity Org Chart")

        assert requirement.category == RequirementCategory.CUSTOM
        assert requirement.id == "custom_entity_org_chart"
        assert checklist.requirement_set.names[-1] == "Entity Org Chart"
        assert checklist.completion_summary().total_required == before + 1
        assert "Entity Org Chart" not in catalog.get_requirement_set("kiavi")

    def test_custom_slot_participates_in_assignment(self, checklist, document):
        checklist.add_custom_requirement("Entity Org Chart")
        checklist.assign("Entity Org Chart", document.id)

        assert checklist.is_satisfied("Entity Org Chart")

    def test_remove_clears_assignment_and_completion(self, checklist, document):
        checklist.add_custom_requirement("Entity Org Chart")
        checklist.assign("Entity Org Chart", document.id)
        checklist.mark_complete("Entity Org Chart")

        assert checklist.remove_custom_requirement("Entity Org Chart") is True

        assert "Entity Org Chart" not in checklist.assignments
        assert "Entity Org Chart" not in checklist.completed
        assert "Entity Org Chart" not in checklist.requirement_set

    def test_remove_catalog_requirement_is_refused(self, checklist):
        assert checklist.remove_custom_requirement("Appraisal") is False
        assert "Appraisal" in checklist.requirement_set

    def test_duplicate_name_rejected(self, checklist):
        with pytest.raises(ValueError):
            checklist.add_custom_requirement("Appraisal")

    def test_blank_name_rejected(self, checklist):
        with pytest.raises(ValueError):
            checklist.add_custom_requirement("   ")

    def test_name_with_same_id_rejected(self, checklist, store, catalog):
        """'Rent Roll' and 'rent-roll' share an id; the second is refused."""
        checklist.add_custom_requirement("Rent Roll")
        before = checklist.snapshot()

        with pytest.raises(ValueError):
            checklist.add_custom_requirement("rent-roll")

        assert checklist.snapshot() == before
        assert checklist.custom_requirements == ["Rent Roll"]
        checklist.completion_summary()
        reopened = open_checklist("L1", "kiavi", catalog, store)
        assert reopened.custom_requirements == ["Rent Roll"]
        reopened.mark_complete("Rent Roll")

    def test_custom_requirement_helper(self):
        assert custom_requirement("Rent Roll (2024)").id == "custom_rent_roll_2024"


# ============================================================================
# Test: Persistence failures
# ============================================================================

class TestPersistenceFailure:

    def test_failed_write_leaves_state_unchanged(self, checklist, document, store):
        checklist.mark_complete("Voided Check")
        before = checklist.snapshot()

        with patch.object(store, "save_checklist", side_effect=PersistenceError("disk full", loan_id="L1")):
            with pytest.raises(PersistenceError):
                checklist.assign("Appraisal", document.id)
            with pytest.raises(PersistenceError):
                checklist.add_custom_requirement("Entity Org Chart")

        assert checklist.snapshot() == before
        assert "Entity Org Chart" not in checklist.requirement_set

    def test_os_error_is_wrapped(self, checklist):
        with patch.object(checklist._store, "save_checklist", side_effect=OSError("read-only")):
            with pytest.raises(PersistenceError) as exc_info:
                checklist.mark_complete("Appraisal")

        assert exc_info.value.loan_id == "L1"
        assert checklist.completed == set()


# ============================================================================
# Test: Suggestions and reporting
# ============================================================================

class TestSuggestions:

    def test_fills_only_empty_uncompleted_slots(self, checklist, store):
        manual = store.save_document(Document("L1", "manual.pdf", 10))
        suggested = store.save_document(Document("L1", "suggested.pdf", 20))
        checklist.assign("Appraisal", manual.id)
        checklist.mark_complete("Voided Check")

        applied = checklist.apply_suggestions({
            "Appraisal": [suggested.id],
            "Voided Check": [suggested.id],
            "Insurance Policy": [suggested.id],
            "Unknown Slot": [suggested.id],
        })

        assert applied == {"Insurance Policy": [suggested.id]}
        assert checklist.assignments["Appraisal"] == {manual.id}
        assert "Voided Check" not in checklist.assignments

    def test_missing_requirements_lists_unsatisfied_required(self, checklist, document):
        checklist.assign("Appraisal", document.id)

        missing = {r.display_name for r in checklist.missing_requirements()}

        assert "Appraisal" not in missing
        assert "Borrowing Authorization Form" in missing
        assert "Payoff Statement" not in missing

    def test_requirement_statuses_rows(self, checklist, document):
        checklist.assign("Appraisal", document.id)

        rows = {row.requirement.display_name: row for row in checklist.requirement_statuses()}

        assert rows["Appraisal"].satisfied is True
        assert rows["Appraisal"].document_ids == [document.id]
        assert rows["Appraisal"].to_dict()["category"] == "appraisal"

    def test_clear_assignments_keeps_completion(self, checklist, document):
        checklist.assign("Appraisal", document.id)
        checklist.mark_complete("Voided Check")

        checklist.clear_assignments()

        assert checklist.assignments == {}
        assert checklist.completed == {"Voided Check"}


class TestChecklistSnapshot:

    def test_dict_round_trip(self):
        snapshot = ChecklistSnapshot(
            assignments={"Appraisal": frozenset({"b", "a"})},
            completed=frozenset({"Appraisal"}),
            custom_requirements=("Org Chart",),
        )

        assert ChecklistSnapshot.from_dict(snapshot.to_dict()) == snapshot
        assert snapshot.to_dict()["assignments"] == {"Appraisal": ["a", "b"]}
