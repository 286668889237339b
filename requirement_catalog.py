"""
DSCR loan document requirements by funder.

A requirement set is the base checklist that applies to every funder plus the
funder's own overlay. Sets are immutable values: the reconciliation engine
receives one when a loan is opened and never mutates the catalog.
"""
import json
import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from errors import CatalogError

logger = logging.getLogger(__name__)


class RequirementCategory(str, Enum):
    """Checklist sections."""
    BORROWER_ENTITY = "borrower_entity"
    FINANCIALS = "financials"
    PROPERTY = "property"
    APPRAISAL = "appraisal"
    INSURANCE = "insurance"
    TITLE = "title"
    PAYOFF = "payoff"
    LENDER_SPECIFIC = "lender_specific"
    CUSTOM = "custom"


CATEGORY_DISPLAY_NAMES: Dict[RequirementCategory, str] = {
    RequirementCategory.BORROWER_ENTITY: "Borrower & Entity Documents",
    RequirementCategory.FINANCIALS: "Financial Documents",
    RequirementCategory.PROPERTY: "Property Ownership",
    RequirementCategory.APPRAISAL: "Appraisal",
    RequirementCategory.INSURANCE: "Insurance",
    RequirementCategory.TITLE: "Title",
    RequirementCategory.PAYOFF: "Payoff Information",
    RequirementCategory.LENDER_SPECIFIC: "Lender-Specific Documents",
    RequirementCategory.CUSTOM: "Custom Requirements",
}

FUNDER_DISPLAY_NAMES: Dict[str, str] = {
    "kiavi": "Kiavi",
    "visio": "Visio",
    "roc_capital": "ROC Capital",
    "ahl": "AHL (American Heritage Lending)",
    "velocity": "Velocity",
}


@dataclass(frozen=True)
class RequirementDefinition:
    """A single checklist slot a loan file must satisfy."""
    id: str
    display_name: str
    category: RequirementCategory
    required: bool = True
    funder_specific: bool = False
    description: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "display_name": self.display_name,
            "category": self.category.value,
            "required": self.required,
            "funder_specific": self.funder_specific,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], funder_specific: bool = False) -> "RequirementDefinition":
        return cls(
            id=data["id"],
            display_name=data.get("display_name") or data["name"],
            category=RequirementCategory(data.get("category", "custom")),
            required=bool(data.get("required", True)),
            funder_specific=bool(data.get("funder_specific", funder_specific)),
            description=data.get("description"),
        )


@dataclass(frozen=True)
class RequirementSet:
    """Ordered, immutable requirements for one funder."""
    funder_id: str
    requirements: Tuple[RequirementDefinition, ...] = field(default_factory=tuple)

    def __post_init__(self):
        _check_unique(self.requirements, f"requirement set '{self.funder_id}'")

    def __iter__(self):
        return iter(self.requirements)

    def __len__(self) -> int:
        return len(self.requirements)

    def __contains__(self, display_name: object) -> bool:
        return any(r.display_name == display_name for r in self.requirements)

    def get(self, display_name: str) -> Optional[RequirementDefinition]:
        for requirement in self.requirements:
            if requirement.display_name == display_name:
                return requirement
        return None

    def get_by_id(self, requirement_id: str) -> Optional[RequirementDefinition]:
        for requirement in self.requirements:
            if requirement.id == requirement_id:
                return requirement
        return None

    def required(self) -> List[RequirementDefinition]:
        return [r for r in self.requirements if r.required]

    @property
    def names(self) -> List[str]:
        return [r.display_name for r in self.requirements]

    def by_category(self) -> Dict[RequirementCategory, List[RequirementDefinition]]:
        grouped: Dict[RequirementCategory, List[RequirementDefinition]] = {}
        for requirement in self.requirements:
            grouped.setdefault(requirement.category, []).append(requirement)
        return grouped

    def extended(self, extra: Iterable[RequirementDefinition]) -> "RequirementSet":
        """Return a new set with extra requirements appended."""
        return RequirementSet(self.funder_id, self.requirements + tuple(extra))


def _check_unique(requirements: Iterable[RequirementDefinition], where: str) -> None:
    seen_ids = set()
    seen_names = set()
    for requirement in requirements:
        if requirement.id in seen_ids:
            raise CatalogError(f"Duplicate requirement id '{requirement.id}' in {where}")
        if requirement.display_name in seen_names:
            raise CatalogError(f"Duplicate requirement name '{requirement.display_name}' in {where}")
        seen_ids.add(requirement.id)
        seen_names.add(requirement.display_name)


class RequirementCatalog:
    """
    Mapping from funder id to requirement set.

    Overlays are validated against the base set when the catalog is built:
    an overlay may not redefine a base id or display name.
    """

    BASE_FUNDER_ID = "base"

    def __init__(
        self,
        base: Iterable[RequirementDefinition],
        overlays: Optional[Dict[str, Iterable[RequirementDefinition]]] = None,
        version: str = "1",
    ):
        self.version = version
        self._base = RequirementSet(self.BASE_FUNDER_ID, tuple(base))
        if not len(self._base):
            raise CatalogError("Base requirement set must not be empty")

        self._sets: Dict[str, RequirementSet] = {}
        for funder_id, overlay in (overlays or {}).items():
            key = funder_id.lower().strip()
            try:
                self._sets[key] = RequirementSet(key, self._base.requirements + tuple(overlay))
            except CatalogError as e:
                raise CatalogError(f"Overlay for funder '{funder_id}' conflicts: {e}") from e

    @property
    def base(self) -> RequirementSet:
        return self._base

    @property
    def funder_ids(self) -> List[str]:
        return list(self._sets)

    def get_requirement_set(self, funder_id: Optional[str]) -> RequirementSet:
        """Requirement set for a funder; unknown funders get the base set."""
        if not funder_id:
            return self._base
        found = self._sets.get(funder_id.lower().strip())
        if found is None:
            logger.info(f"No overlay for funder '{funder_id}', using base requirements")
            return self._base
        return found


# ============================================================================
# Default Catalog
# ============================================================================

def _req(
    id: str,
    name: str,
    category: RequirementCategory,
    required: bool = True,
    description: Optional[str] = None,
    funder_specific: bool = False,
) -> RequirementDefinition:
    return RequirementDefinition(id, name, category, required, funder_specific, description)


def _overlay(*items: Tuple) -> List[RequirementDefinition]:
    return [_req(*item, funder_specific=True) for item in items]


C = RequirementCategory

BASE_REQUIREMENTS: List[RequirementDefinition] = [
    # Borrower & Entity
    _req("drivers_license", "Driver's License (front and back)", C.BORROWER_ENTITY),
    _req("articles_org", "Articles of Organization / Incorporation", C.BORROWER_ENTITY),
    _req("operating_agreement", "Operating Agreement", C.BORROWER_ENTITY),
    _req("good_standing", "Certificate of Good Standing", C.BORROWER_ENTITY),
    _req("ein_letter", "EIN Letter from IRS", C.BORROWER_ENTITY),
    # Financials
    _req("bank_statements", "2 most recent Bank Statements", C.FINANCIALS),
    _req("voided_check", "Voided Check", C.FINANCIALS),
    # Property
    _req("property_ownership", "HUD (or Other Documentation of Property Ownership)", C.PROPERTY),
    _req("current_leases", "All Current Leases", C.PROPERTY),
    # Appraisal
    _req("appraisal", "Appraisal", C.APPRAISAL),
    # Insurance
    _req("insurance_policy", "Insurance Policy", C.INSURANCE),
    _req("insurance_contact", "Insurance Agent Contact Info", C.INSURANCE),
    _req("flood_policy", "Flood Policy (If applicable)", C.INSURANCE, False),
    _req("flood_contact", "Flood Insurance Agent Contact Info", C.INSURANCE, False),
    # Title
    _req("title_contact", "Title Agent Contact Info", C.TITLE),
    _req("preliminary_title", "Preliminary Title", C.TITLE),
    _req("closing_protection_letter", "Closing Protection Letter", C.TITLE),
    _req("wire_instructions", "Wire Instructions", C.TITLE),
    # Payoff
    _req("lender_contact", "Current Lender Contact Info", C.PAYOFF, False),
    _req("payoff_statement", "Payoff Statement", C.PAYOFF, False),
]

FUNDER_OVERLAYS: Dict[str, List[RequirementDefinition]] = {
    "kiavi": _overlay(
        ("kiavi_auth_form", "Borrowing Authorization Form", C.LENDER_SPECIFIC),
        ("kiavi_disclosure", "Disclosure Form", C.LENDER_SPECIFIC),
    ),
    "visio": _overlay(
        ("visio_application", "Visio Financial Services Loan Application (from Visio Portal)", C.LENDER_SPECIFIC),
        ("visio_broker_submission", "Broker Submission Form (from Visio Portal)", C.LENDER_SPECIFIC),
        ("visio_broker_w9", "Broker W9 Form (from Visio Portal)", C.LENDER_SPECIFIC),
        ("visio_plaid_liquidity", "Proof of Liquidity via Plaid Connection (from loan analysis email)", C.LENDER_SPECIFIC),
        ("visio_rent_collection", "Proof of Rent Collection Deposits", C.LENDER_SPECIFIC, False,
         "Required if lease rents exceed market rents"),
        ("visio_asset_verification", "Asset Verification Documentation", C.LENDER_SPECIFIC),
    ),
    "roc_capital": _overlay(
        ("roc_background", "ROC Capital Background/Credit Authorization", C.LENDER_SPECIFIC),
        ("roc_ach_consent", "ROC ACH Consent Form", C.LENDER_SPECIFIC),
        ("roc_property_tax", "Current Property Tax Bill", C.LENDER_SPECIFIC),
        ("roc_liquidity", "Proof of Liquidity and Down Payment", C.LENDER_SPECIFIC),
        ("roc_business_purpose", "ROC Business Purpose Statement", C.LENDER_SPECIFIC),
        ("roc_rent_collection", "3 Months Rent Collection History", C.LENDER_SPECIFIC, False,
         "Required for all rental units"),
        ("roc_security_deposits", "Security Deposit Documentation", C.LENDER_SPECIFIC, False,
         "Required for new leases under 30 days"),
    ),
    "ahl": _overlay(
        ("ahl_entity_resolution", "Entity Resolution (AHL template)", C.LENDER_SPECIFIC),
        ("ahl_business_purpose", "Borrower's Statement of Business Purpose (AHL template)", C.LENDER_SPECIFIC),
        ("ahl_liquidity_proof", "Proof of Liquidity / Funds to Close", C.LENDER_SPECIFIC),
        ("ahl_piti_reserves", "6 Months PITI Reserves", C.LENDER_SPECIFIC, True, "Must be documented"),
        ("ahl_vom_12mo", "VOM showing 12 months payment history", C.LENDER_SPECIFIC, False),
        ("ahl_mortgage_statements", "2 Recent Mortgage Statements", C.LENDER_SPECIFIC, False,
         "For any open accounts on background check"),
        ("ahl_preliminary_title", "Preliminary Title Report / Title Commitment", C.TITLE),
        ("ahl_closing_protection", "Closing Protection Letter (CPL)", C.TITLE),
        # Base set already has "Wire Instructions"; AHL wants its own escrow copy.
        ("ahl_wire_instructions", "Wire Instructions (AHL)", C.TITLE),
    ),
    "velocity": _overlay(
        ("velocity_app", "Velocity Loan Application", C.LENDER_SPECIFIC),
        ("velocity_borrower_cert", "Borrower Certification Form", C.LENDER_SPECIFIC),
        ("velocity_liquidity", "Proof of Liquidity Documentation", C.LENDER_SPECIFIC),
        ("velocity_piti_reserves", "PITI Reserves Documentation", C.LENDER_SPECIFIC),
        ("velocity_asset_verification", "Asset Verification Form", C.LENDER_SPECIFIC),
    ),
}


def build_default_catalog() -> RequirementCatalog:
    return RequirementCatalog(BASE_REQUIREMENTS, FUNDER_OVERLAYS)


def load_catalog(path: str) -> RequirementCatalog:
    """
    Load a versioned catalog from a JSON file.

    Format:
        {"version": "2", "base": [{...}], "funders": {"kiavi": [{...}]}}
    """
    with open(path, "r") as f:
        data = json.load(f)

    base = [RequirementDefinition.from_dict(item) for item in data.get("base", [])]
    overlays = {
        funder_id: [RequirementDefinition.from_dict(item, funder_specific=True) for item in items]
        for funder_id, items in data.get("funders", {}).items()
    }
    catalog = RequirementCatalog(base, overlays, version=str(data.get("version", "1")))
    logger.info(f"Loaded requirement catalog v{catalog.version} from {path} "
                f"({len(base)} base, {len(overlays)} funders)")
    return catalog


# Global catalog instance (built lazily)
_default_catalog: Optional[RequirementCatalog] = None


def get_default_catalog() -> RequirementCatalog:
    """
    Get the process-wide catalog.

    Uses REQUIREMENT_CATALOG_PATH when set, otherwise the built-in catalog.
    """
    global _default_catalog
    if _default_catalog is None:
        path = os.getenv("REQUIREMENT_CATALOG_PATH")
        _default_catalog = load_catalog(path) if path else build_default_catalog()
    return _default_catalog


def get_requirement_set(funder_id: Optional[str]) -> RequirementSet:
    return get_default_catalog().get_requirement_set(funder_id)


def category_display_name(category: RequirementCategory) -> str:
    return CATEGORY_DISPLAY_NAMES.get(category, category.value)


def funder_display_name(funder_id: str) -> str:
    return FUNDER_DISPLAY_NAMES.get((funder_id or "").lower(), funder_id)
