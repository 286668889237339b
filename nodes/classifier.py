"""
Document Classifier Node - Document Type Labels for Loan Files

Assigns each document a type label ("Bank Statement", "Title Report", ...)
from its filename and extracted text:

1. Filename match against an ordered pattern list (first match wins)
2. The same pattern list over the extracted text
3. "General Document" when nothing matches

Order matters because patterns overlap: "Title Report" has to be tried
before the generic insurance/policy patterns, "Flood Insurance" before
"Insurance Policy", and so on.

The classifier is pure and deterministic. It never calls the language
model; structured field extraction is the analyzer's job.
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional, Pattern, Tuple

from requirement_catalog import RequirementDefinition, RequirementSet, get_requirement_set
from state import IngestedDocument, LoanFileState

logger = logging.getLogger(__name__)


# ============================================================================
# Document Types
# ============================================================================

class DocumentType(str, Enum):
    """Document type labels for DSCR loan files."""
    # Borrower & entity
    DRIVERS_LICENSE = "Driver's License"
    EIN_DOCUMENT = "EIN Document"
    ARTICLES_OF_ORGANIZATION = "Articles of Organization"
    OPERATING_AGREEMENT = "Operating Agreement"
    CERTIFICATE_OF_GOOD_STANDING = "Certificate of Good Standing"

    # Title & closing
    CLOSING_PROTECTION_LETTER = "Closing Protection Letter"
    WIRE_INSTRUCTIONS = "Wire Instructions"
    TITLE_REPORT = "Title Report"
    PAYOFF_STATEMENT = "Payoff Statement"
    SETTLEMENT_STATEMENT = "Settlement Statement"

    # Property
    LEASE_AGREEMENT = "Lease Agreement"
    PROPERTY_APPRAISAL = "Property Appraisal"
    PROPERTY_TAX_BILL = "Property Tax Bill"
    DEED_OF_TRUST = "Deed of Trust"
    PURCHASE_AGREEMENT = "Purchase Agreement"

    # Insurance
    FLOOD_INSURANCE = "Flood Insurance"
    INSURANCE_POLICY = "Insurance Policy"

    # Financials
    VOIDED_CHECK = "Voided Check"
    BANK_STATEMENT = "Bank Statement"
    MORTGAGE_STATEMENT = "Mortgage Statement"
    LOAN_APPLICATION = "Loan Application"
    CREDIT_REPORT = "Credit Report"
    TAX_RETURN = "Tax Return"
    INCOME_VERIFICATION = "Income Verification"
    W9_FORM = "W-9 Form"

    GENERAL = "General Document"

    @classmethod
    def from_string(cls, value: str) -> "DocumentType":
        """Convert a label to a DocumentType, case-insensitive. Unknown labels are GENERAL."""
        value_lower = (value or "").lower().strip()
        for doc_type in cls:
            if doc_type.value.lower() == value_lower:
                return doc_type
        return cls.GENERAL


# Ordered: the first pattern that matches decides the label.
CLASSIFICATION_PATTERNS: List[Tuple[DocumentType, str]] = [
    (DocumentType.DRIVERS_LICENSE, r"driver'?s?\s+licen[cs]e"),
    (DocumentType.EIN_DOCUMENT, r"\bein\b|employer\s+identification\s+number|\btax\s+id\b"),
    (DocumentType.ARTICLES_OF_ORGANIZATION,
     r"articles?\s+of\s+(organization|incorporation)|certificate\s+of\s+formation"),
    (DocumentType.OPERATING_AGREEMENT, r"operating\s+agreement"),
    (DocumentType.CERTIFICATE_OF_GOOD_STANDING, r"good\s+standing|certificate\s+of\s+existence"),
    (DocumentType.CLOSING_PROTECTION_LETTER, r"closing\s+protection\s+letter|\bcpl\b"),
    (DocumentType.WIRE_INSTRUCTIONS, r"wire\s+instructions?"),
    (DocumentType.TITLE_REPORT,
     r"title\s+(report|commitment)|prelim(inary)?\s+title"),
    (DocumentType.PAYOFF_STATEMENT, r"\bpayoff\b"),
    (DocumentType.SETTLEMENT_STATEMENT,
     r"\bhud(\s*-?\s*1)?\b|settlement\s+statement|closing\s+statement"),
    (DocumentType.LEASE_AGREEMENT, r"lease\s+agreement|rental\s+agreement|\bleases?\b"),
    (DocumentType.PROPERTY_APPRAISAL, r"\bappraisal\b"),
    (DocumentType.PROPERTY_TAX_BILL, r"property\s+tax|tax\s+bill"),
    (DocumentType.DEED_OF_TRUST, r"deed\s+of\s+trust|\bdeed\b"),
    (DocumentType.PURCHASE_AGREEMENT, r"purchase\s+(and\s+sale\s+)?agreement"),
    (DocumentType.FLOOD_INSURANCE, r"flood\s+(insurance|policy|cert(ificate)?)"),
    (DocumentType.INSURANCE_POLICY,
     r"insurance\s+policy|\binsurance\b|\bpolicy\b|declarations?\s+page|\bcoverage\b"),
    (DocumentType.VOIDED_CHECK, r"void(ed)?\s+che(ck|que)"),
    (DocumentType.BANK_STATEMENT, r"bank\s+statement"),
    (DocumentType.MORTGAGE_STATEMENT, r"mortgage\s+statement"),
    (DocumentType.LOAN_APPLICATION, r"loan\s+application"),
    (DocumentType.CREDIT_REPORT, r"credit\s+report"),
    (DocumentType.TAX_RETURN, r"tax\s+return|form\s+1040"),
    (DocumentType.INCOME_VERIFICATION, r"income\s+verification|verification\s+of\s+income"),
    (DocumentType.W9_FORM, r"\bw\s?9\b"),
]

_COMPILED_PATTERNS: List[Tuple[DocumentType, Pattern[str]]] = [
    (doc_type, re.compile(pattern, re.IGNORECASE)) for doc_type, pattern in CLASSIFICATION_PATTERNS
]

# Catalog requirement ids a label is evidence for, in preference order.
# Funder overlays are covered by listing their ids after the base id.
DOCUMENT_TYPE_TO_REQUIREMENT: Dict[DocumentType, Tuple[str, ...]] = {
    DocumentType.DRIVERS_LICENSE: ("drivers_license",),
    DocumentType.EIN_DOCUMENT: ("ein_letter",),
    DocumentType.ARTICLES_OF_ORGANIZATION: ("articles_org",),
    DocumentType.OPERATING_AGREEMENT: ("operating_agreement",),
    DocumentType.CERTIFICATE_OF_GOOD_STANDING: ("good_standing",),
    DocumentType.CLOSING_PROTECTION_LETTER: ("closing_protection_letter", "ahl_closing_protection"),
    DocumentType.WIRE_INSTRUCTIONS: ("wire_instructions", "ahl_wire_instructions"),
    DocumentType.TITLE_REPORT: ("preliminary_title", "ahl_preliminary_title"),
    DocumentType.PAYOFF_STATEMENT: ("payoff_statement",),
    DocumentType.SETTLEMENT_STATEMENT: ("property_ownership",),
    DocumentType.DEED_OF_TRUST: ("property_ownership",),
    DocumentType.LEASE_AGREEMENT: ("current_leases",),
    DocumentType.PROPERTY_APPRAISAL: ("appraisal",),
    DocumentType.PROPERTY_TAX_BILL: ("roc_property_tax",),
    DocumentType.FLOOD_INSURANCE: ("flood_policy",),
    DocumentType.INSURANCE_POLICY: ("insurance_policy",),
    DocumentType.VOIDED_CHECK: ("voided_check",),
    DocumentType.BANK_STATEMENT: ("bank_statements",),
    DocumentType.MORTGAGE_STATEMENT: ("ahl_mortgage_statements",),
    DocumentType.LOAN_APPLICATION: ("velocity_app", "visio_application"),
    DocumentType.W9_FORM: ("visio_broker_w9",),
}


# ============================================================================
# Classification
# ============================================================================

@dataclass
class ClassificationResult:
    """Result of document classification."""
    document_type: DocumentType
    method: str  # "filename", "content", "fallback"
    matched_pattern: Optional[str] = None

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "document_type": self.document_type.value,
            "method": self.method,
            "matched_pattern": self.matched_pattern,
        }


def normalize_filename(name: str) -> str:
    """Lowercase a filename and turn _ - . separators into spaces."""
    return re.sub(r"[_\-.]+", " ", name or "").lower().strip()


def _first_match(text: str) -> Optional[Tuple[DocumentType, str]]:
    for doc_type, pattern in _COMPILED_PATTERNS:
        if pattern.search(text):
            return doc_type, pattern.pattern
    return None


def classify_document(name: str, text: str = "") -> ClassificationResult:
    """
    Classify a document by filename, then content.

    The content stage only runs when the filename matched nothing, so
    empty or failed extractions still classify by name.
    """
    match = _first_match(normalize_filename(name))
    if match:
        return ClassificationResult(match[0], "filename", match[1])

    if text:
        match = _first_match(text.lower())
        if match:
            return ClassificationResult(match[0], "content", match[1])

    return ClassificationResult(DocumentType.GENERAL, "fallback")


def classify(name: str, text: str = "") -> DocumentType:
    return classify_document(name, text).document_type


# ============================================================================
# Requirement Suggestions
# ============================================================================

def suggest_requirement(
    document_type: DocumentType,
    requirement_set: RequirementSet,
) -> Optional[RequirementDefinition]:
    """The requirement slot a label is evidence for, if the set has one."""
    for requirement_id in DOCUMENT_TYPE_TO_REQUIREMENT.get(document_type, ()):
        requirement = requirement_set.get_by_id(requirement_id)
        if requirement is not None:
            return requirement
    return None


def suggest_assignments(
    documents: Iterable[IngestedDocument],
    requirement_set: RequirementSet,
) -> Dict[str, List[str]]:
    """
    Advisory requirement -> document ids mapping from document type labels.

    Nothing here is applied to a checklist; the reconciliation engine decides.
    """
    suggestions: Dict[str, List[str]] = {}
    for doc in documents:
        document_id = doc.get("document_id")
        if not document_id:
            continue
        doc_type = DocumentType.from_string(doc.get("document_type", ""))
        requirement = suggest_requirement(doc_type, requirement_set)
        if requirement is not None:
            suggestions.setdefault(requirement.display_name, []).append(document_id)
    return suggestions


# ============================================================================
# Main Node Function
# ============================================================================

def classifier_node(state: LoanFileState) -> dict:
    """
    Node: Document Classifier

    Labels every document in state and derives advisory requirement
    suggestions for the loan's funder.
    """
    logger.info("--- NODE: Classifier ---")

    requirement_set = get_requirement_set(state.get("funder_id"))
    classified: List[IngestedDocument] = []
    for doc in state.get("documents", []):
        result = classify_document(doc.get("name", ""), doc.get("text", ""))
        requirement = suggest_requirement(result.document_type, requirement_set)
        updated: IngestedDocument = {
            **doc,
            "document_type": result.document_type.value,
            "suggested_requirement": requirement.display_name if requirement else None,
        }
        logger.info(f"{doc.get('name')}: {result.document_type.value} (via {result.method})")
        classified.append(updated)

    return {
        "documents": classified,
        "suggested_assignments": suggest_assignments(classified, requirement_set),
    }
