"""
Requirement reconciliation for a single loan.

Tracks two independent things per requirement slot:
- assignment: which documents are evidence for it (many-to-many)
- completion: whether a user has explicitly marked it done

A slot is satisfied when it has at least one live assigned document or is
marked complete. Callers serialize operations per loan; there is no locking
here.
"""
import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Set, Tuple

from errors import PersistenceError
from requirement_catalog import (
    RequirementCatalog,
    RequirementCategory,
    RequirementDefinition,
    RequirementSet,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChecklistSnapshot:
    """Immutable persisted state of a loan's checklist."""
    assignments: Dict[str, FrozenSet[str]] = field(default_factory=dict)
    completed: FrozenSet[str] = frozenset()
    custom_requirements: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "assignments": {
                name: sorted(doc_ids) for name, doc_ids in self.assignments.items() if doc_ids
            },
            "completed": sorted(self.completed),
            "custom_requirements": list(self.custom_requirements),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChecklistSnapshot":
        return cls(
            assignments={
                name: frozenset(str(d) for d in doc_ids)
                for name, doc_ids in (data.get("assignments") or {}).items()
            },
            completed=frozenset(data.get("completed") or []),
            custom_requirements=tuple(data.get("custom_requirements") or []),
        )


@dataclass
class CompletionSummary:
    total_required: int
    total_satisfied: int
    percentage: int

    def to_dict(self) -> Dict[str, int]:
        return {
            "total_required": self.total_required,
            "total_satisfied": self.total_satisfied,
            "percentage": self.percentage,
        }


@dataclass
class RequirementStatus:
    """One checklist row."""
    requirement: RequirementDefinition
    document_ids: List[str]
    completed: bool
    satisfied: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            **self.requirement.to_dict(),
            "document_ids": self.document_ids,
            "completed": self.completed,
            "satisfied": self.satisfied,
        }


def custom_requirement(name: str) -> RequirementDefinition:
    slug = re.sub(r"[^a-z0-9]+", "_", name.lower()).strip("_")
    return RequirementDefinition(
        id=f"custom_{slug}",
        display_name=name,
        category=RequirementCategory.CUSTOM,
        required=True,
    )


def percent(satisfied: int, total: int) -> int:
    """Half-up rounded percentage; 0 when nothing is required."""
    if total <= 0:
        return 0
    return int(math.floor(100.0 * satisfied / total + 0.5))


class LoanChecklist:
    """
    Reconciliation engine for one open loan.

    `store` must provide list_documents(loan_id, include_deleted) and
    save_checklist(loan_id, snapshot_dict). Every mutation persists a new
    snapshot before it becomes visible; if the write fails the checklist is
    left exactly as it was.
    """

    def __init__(
        self,
        loan_id: str,
        requirement_set: RequirementSet,
        store: Any,
        snapshot: Optional[ChecklistSnapshot] = None,
    ):
        self.loan_id = loan_id
        self.base_requirements = requirement_set
        self._store = store
        self._snapshot = snapshot or ChecklistSnapshot()

    # ========================================================================
    # Read side
    # ========================================================================

    @property
    def requirement_set(self) -> RequirementSet:
        """Catalog requirements plus this loan's custom requirements."""
        return self.base_requirements.extended(
            custom_requirement(name) for name in self._snapshot.custom_requirements
        )

    @property
    def assignments(self) -> Dict[str, Set[str]]:
        return {name: set(ids) for name, ids in self._snapshot.assignments.items() if ids}

    @property
    def completed(self) -> Set[str]:
        return set(self._snapshot.completed)

    @property
    def custom_requirements(self) -> List[str]:
        return list(self._snapshot.custom_requirements)

    def snapshot(self) -> ChecklistSnapshot:
        return self._snapshot

    def _live_document_ids(self) -> Set[str]:
        return {d.id for d in self._store.list_documents(self.loan_id)}

    def _is_satisfied(self, name: str, live_ids: Set[str]) -> bool:
        if name in self._snapshot.completed:
            return True
        return bool(self._snapshot.assignments.get(name, frozenset()) & live_ids)

    def is_satisfied(self, requirement_name: str) -> bool:
        return self._is_satisfied(requirement_name, self._live_document_ids())

    def requirement_statuses(self) -> List[RequirementStatus]:
        live_ids = self._live_document_ids()
        rows = []
        for requirement in self.requirement_set:
            name = requirement.display_name
            rows.append(RequirementStatus(
                requirement=requirement,
                document_ids=sorted(self._snapshot.assignments.get(name, frozenset())),
                completed=name in self._snapshot.completed,
                satisfied=self._is_satisfied(name, live_ids),
            ))
        return rows

    def missing_requirements(self) -> List[RequirementDefinition]:
        """Required slots that are not yet satisfied."""
        return [
            row.requirement for row in self.requirement_statuses()
            if row.requirement.required and not row.satisfied
        ]

    def completion_summary(self) -> CompletionSummary:
        live_ids = self._live_document_ids()
        required = self.requirement_set.required()
        satisfied = sum(1 for r in required if self._is_satisfied(r.display_name, live_ids))
        return CompletionSummary(
            total_required=len(required),
            total_satisfied=satisfied,
            percentage=percent(satisfied, len(required)),
        )

    # ========================================================================
    # Mutations
    # ========================================================================

    def _require_known(self, requirement_name: str) -> None:
        if requirement_name not in self.requirement_set:
            raise KeyError(f"Unknown requirement '{requirement_name}' for loan {self.loan_id}")

    def _commit(self, snapshot: ChecklistSnapshot, operation: str) -> None:
        if snapshot == self._snapshot:
            return
        try:
            self._store.save_checklist(self.loan_id, snapshot.to_dict())
        except PersistenceError:
            logger.error(f"{operation} for loan {self.loan_id} not persisted; state unchanged")
            raise
        except OSError as e:
            logger.error(f"{operation} for loan {self.loan_id} not persisted; state unchanged")
            raise PersistenceError(f"{operation} failed: {e}", loan_id=self.loan_id,
                                   stage="reconciliation") from e
        self._snapshot = snapshot

    def _with_assignments(self, assignments: Dict[str, FrozenSet[str]]) -> ChecklistSnapshot:
        return ChecklistSnapshot(
            assignments={k: v for k, v in assignments.items() if v},
            completed=self._snapshot.completed,
            custom_requirements=self._snapshot.custom_requirements,
        )

    def assign(self, requirement_name: str, document_id: str) -> None:
        """Add a document as evidence; the same document may back several slots."""
        self._require_known(requirement_name)
        assignments = dict(self._snapshot.assignments)
        assignments[requirement_name] = assignments.get(requirement_name, frozenset()) | {document_id}
        self._commit(self._with_assignments(assignments), "assign")

    def unassign(self, requirement_name: str, document_id: str) -> None:
        assignments = dict(self._snapshot.assignments)
        current = assignments.get(requirement_name, frozenset())
        if document_id not in current:
            return
        assignments[requirement_name] = current - {document_id}
        self._commit(self._with_assignments(assignments), "unassign")

    def mark_complete(self, requirement_name: str) -> None:
        self._require_known(requirement_name)
        self._commit(ChecklistSnapshot(
            assignments=self._snapshot.assignments,
            completed=self._snapshot.completed | {requirement_name},
            custom_requirements=self._snapshot.custom_requirements,
        ), "mark_complete")

    def unmark_complete(self, requirement_name: str) -> None:
        self._commit(ChecklistSnapshot(
            assignments=self._snapshot.assignments,
            completed=self._snapshot.completed - {requirement_name},
            custom_requirements=self._snapshot.custom_requirements,
        ), "unmark_complete")

    def add_custom_requirement(self, name: str) -> RequirementDefinition:
        """Append a loan-only requirement; the catalog is untouched."""
        name = name.strip()
        if not name:
            raise ValueError("Custom requirement name must not be empty")
        if name in self.requirement_set:
            raise ValueError(f"Requirement '{name}' already exists for loan {self.loan_id}")
        requirement = custom_requirement(name)
        clash = self.requirement_set.get_by_id(requirement.id)
        if clash is not None:
            raise ValueError(
                f"Requirement '{name}' collides with '{clash.display_name}' ({requirement.id}) "
                f"on loan {self.loan_id}"
            )
        self._commit(ChecklistSnapshot(
            assignments=self._snapshot.assignments,
            completed=self._snapshot.completed,
            custom_requirements=self._snapshot.custom_requirements + (name,),
        ), "add_custom_requirement")
        logger.info(f"Added custom requirement '{name}' to loan {self.loan_id}")
        return requirement

    def remove_custom_requirement(self, name: str) -> bool:
        """Remove a custom requirement along with its assignments and completion."""
        if name not in self._snapshot.custom_requirements:
            return False
        assignments = {k: v for k, v in self._snapshot.assignments.items() if k != name}
        self._commit(ChecklistSnapshot(
            assignments=assignments,
            completed=self._snapshot.completed - {name},
            custom_requirements=tuple(n for n in self._snapshot.custom_requirements if n != name),
        ), "remove_custom_requirement")
        logger.info(f"Removed custom requirement '{name}' from loan {self.loan_id}")
        return True

    def apply_suggestions(self, suggestions: Dict[str, Iterable[str]]) -> Dict[str, List[str]]:
        """
        Seed assignments from classifier or analysis output.

        Only fills slots with no assigned documents that are not marked
        complete, so manual edits always win. Returns what was applied.
        """
        known = self.requirement_set
        assignments = dict(self._snapshot.assignments)
        applied: Dict[str, List[str]] = {}
        for name, document_ids in suggestions.items():
            ids = frozenset(document_ids)
            if not ids or name not in known:
                continue
            if assignments.get(name) or name in self._snapshot.completed:
                continue
            assignments[name] = ids
            applied[name] = sorted(ids)
        if applied:
            self._commit(self._with_assignments(assignments), "apply_suggestions")
            logger.info(f"Applied {len(applied)} suggested assignments to loan {self.loan_id}")
        return applied

    def clear_assignments(self) -> None:
        """Drop every assignment (used by the irreversible document reset)."""
        self._commit(self._with_assignments({}), "clear_assignments")


def open_checklist(
    loan_id: str,
    funder_id: Optional[str],
    catalog: RequirementCatalog,
    store: Any,
) -> LoanChecklist:
    """Open a loan's checklist with the funder's requirement set and saved state."""
    requirement_set = catalog.get_requirement_set(funder_id)
    snapshot = ChecklistSnapshot.from_dict(store.load_checklist(loan_id))
    return LoanChecklist(loan_id, requirement_set, store, snapshot)
