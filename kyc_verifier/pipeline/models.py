"""Data model shared by every stage of the verification engine.

All records handed between stages are snapshots: an ``EntityRecord`` is
built once from the Fact Store payload and never mutated, and each stage
returns new objects rather than annotating its input.  JSON-serializable
via ``to_dict()`` for write-back and run persistence.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from kyc_verifier.config import REGISTER_OF_MEMBERS_CATEGORY, BENEFICIAL_OWNERSHIP_THRESHOLD
from kyc_verifier.pipeline.errors import DataIntegrityError


# ═══════════════════════════════════════════════════
# SOURCES & DISCREPANCIES
# ═══════════════════════════════════════════════════

@dataclass(frozen=True)
class SourcedValue:
    """One value for one field, as read from one source document."""
    value: str
    document_id: Any = None
    document_name: str = ""
    document_category: str = ""

    @classmethod
    def from_dict(cls, raw: dict) -> "SourcedValue":
        # Fact Store rows use camelCase keys; accept snake_case too
        value = raw.get("value")
        return cls(
            value="" if value is None else str(value),
            document_id=raw.get("documentId", raw.get("document_id")),
            document_name=raw.get("documentName", raw.get("document_name")) or "",
            document_category=raw.get("documentCategory", raw.get("document_category")) or "",
        )

    def to_dict(self) -> dict:
        return {
            "value": self.value,
            "documentId": self.document_id,
            "documentName": self.document_name,
            "documentCategory": self.document_category,
        }


@dataclass(frozen=True)
class Discrepancy:
    """A field with more than one distinct value across its sources."""
    field: str
    distinct_values: tuple[str, ...]
    sources: dict[str, tuple[SourcedValue, ...]] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "field": self.field,
            "values": list(self.distinct_values),
            "sources": {
                value: [s.to_dict() for s in srcs]
                for value, srcs in self.sources.items()
            },
        }


@dataclass(frozen=True)
class GenuineDiscrepancy:
    field: str
    values: tuple[str, ...]
    explanation: str

    def to_dict(self) -> dict:
        return {"field": self.field, "values": list(self.values), "explanation": self.explanation}


@dataclass(frozen=True)
class ResolvedDiscrepancy:
    field: str
    values: tuple[str, ...]
    resolution: str

    def to_dict(self) -> dict:
        return {"field": self.field, "values": list(self.values), "resolution": self.resolution}


# ═══════════════════════════════════════════════════
# CLASSIFICATION & REQUIREMENTS
# ═══════════════════════════════════════════════════

class EntityClassification(str, Enum):
    INDIVIDUAL_DOMESTIC = "IndividualDomestic"
    INDIVIDUAL_FOREIGN = "IndividualForeign"
    CORPORATE_DOMESTIC = "CorporateDomestic"
    CORPORATE_FOREIGN = "CorporateForeign"

    @property
    def is_corporate(self) -> bool:
        return self in (EntityClassification.CORPORATE_DOMESTIC, EntityClassification.CORPORATE_FOREIGN)

    @property
    def is_domestic(self) -> bool:
        return self in (EntityClassification.INDIVIDUAL_DOMESTIC, EntityClassification.CORPORATE_DOMESTIC)


# Config keys per classification: first key wins, the second is the
# jurisdiction-named key used by existing requirement files.
_REQUIREMENT_KEYS = {
    EntityClassification.INDIVIDUAL_DOMESTIC: ("domestic_individual_documents", "singapore_individual_documents"),
    EntityClassification.INDIVIDUAL_FOREIGN: ("foreign_individual_documents",),
    EntityClassification.CORPORATE_DOMESTIC: ("domestic_corporate_documents", "singapore_corporate_documents"),
    EntityClassification.CORPORATE_FOREIGN: ("foreign_corporate_documents",),
}


@dataclass(frozen=True)
class RequirementSet:
    """Required document categories per classification, plus thresholds."""
    documents: dict[EntityClassification, tuple[str, ...]]
    beneficial_ownership_threshold: float = BENEFICIAL_OWNERSHIP_THRESHOLD
    minimum_share_capital: float | None = None
    ownership_category: str = REGISTER_OF_MEMBERS_CATEGORY

    @classmethod
    def from_config(cls, config: dict) -> "RequirementSet":
        documents: dict[EntityClassification, tuple[str, ...]] = {}
        for classification, keys in _REQUIREMENT_KEYS.items():
            for key in keys:
                if isinstance(config.get(key), list):
                    documents[classification] = tuple(str(c) for c in config[key])
                    break
        threshold = config.get("beneficial_ownership_threshold")
        return cls(
            documents=documents,
            beneficial_ownership_threshold=float(
                threshold if threshold is not None else BENEFICIAL_OWNERSHIP_THRESHOLD
            ),
            minimum_share_capital=config.get("minimum_share_capital"),
        )

    def documents_for(self, classification: EntityClassification) -> tuple[str, ...]:
        if classification not in self.documents:
            raise DataIntegrityError(
                f"no requirement set configured for classification {classification.value}"
            )
        return self.documents[classification]

    def to_dict(self) -> dict:
        return {
            "documents": {c.value: list(cats) for c, cats in self.documents.items()},
            "beneficial_ownership_threshold": self.beneficial_ownership_threshold,
            "minimum_share_capital": self.minimum_share_capital,
            "ownership_category": self.ownership_category,
        }


# ═══════════════════════════════════════════════════
# OWNERSHIP
# ═══════════════════════════════════════════════════

@dataclass(frozen=True)
class OwnershipEdge:
    """``owner_id`` owns ``percentage`` % of ``owned_id``."""
    owner_id: str
    owned_id: str
    percentage: float


@dataclass
class BeneficialOwner:
    name: str
    direct_percentage: float
    effective_percentage: float
    path_descriptions: list[str] = field(default_factory=list)
    requires_kyc: bool = True
    verification_status: str | None = None

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "direct_percentage": round(self.direct_percentage, 4),
            "effective_percentage": round(self.effective_percentage, 4),
            "paths": list(self.path_descriptions),
            "requires_kyc": self.requires_kyc,
            "verification_status": self.verification_status,
        }


@dataclass(frozen=True)
class OwnershipIssue:
    owner_name: str
    issue: str          # missing | pending | notverified | unset
    description: str = ""

    def to_dict(self) -> dict:
        return {"owner_name": self.owner_name, "issue": self.issue, "description": self.description}


# ═══════════════════════════════════════════════════
# ENTITIES & RESULTS
# ═══════════════════════════════════════════════════

@dataclass(frozen=True)
class EntityRecord:
    """Snapshot of one director or shareholder as read from the Fact Store."""
    id: Any
    kind: str                                           # director | shareholder
    name: str
    classification: EntityClassification | None
    field_sources: dict[str, tuple[SourcedValue, ...]] = field(default_factory=dict)
    attributes: dict[str, Any] = field(default_factory=dict)
    discrepancies_raw: tuple[dict, ...] = ()
    beneficial_owners_raw: tuple[dict, ...] = ()
    ownership_percentage: float | None = None
    prior_verification_status: str | None = None

    @property
    def is_corporate(self) -> bool:
        if self.classification is not None:
            return self.classification.is_corporate
        return str(self.attributes.get("shareholder_type", "")).lower() == "corporate"

    def primary_value(self, field_name: str) -> str | None:
        """First recorded value for a field (first-value-is-primary)."""
        sources = self.field_sources.get(field_name) or ()
        return sources[0].value if sources else None

    def observed_categories(self) -> list[str]:
        """Distinct document categories across all sources, first-seen order."""
        seen: list[str] = []
        for sources in self.field_sources.values():
            for s in sources:
                if s.document_category and s.document_category not in seen:
                    seen.append(s.document_category)
        return seen


@dataclass
class VerificationResult:
    entity_id: Any
    entity_kind: str
    name: str
    classification: EntityClassification | None
    status: str
    kyc_status_detail: dict | None = None
    genuine_discrepancies: list[GenuineDiscrepancy] = field(default_factory=list)
    resolved_discrepancies: list[ResolvedDiscrepancy] = field(default_factory=list)
    missing_fields: list[str] = field(default_factory=list)
    missing_documents: list[str] = field(default_factory=list)
    beneficial_ownership_issues: list[OwnershipIssue] = field(default_factory=list)
    beneficial_owners: list[BeneficialOwner] = field(default_factory=list)
    judge_fallback: bool = False

    def to_dict(self) -> dict:
        return {
            "entity_id": self.entity_id,
            "entity_kind": self.entity_kind,
            "name": self.name,
            "classification": self.classification.value if self.classification else None,
            "status": self.status,
            "kyc_status_detail": self.kyc_status_detail,
            "details": {
                "genuine_discrepancies": [d.to_dict() for d in self.genuine_discrepancies],
                "resolved_discrepancies": [d.to_dict() for d in self.resolved_discrepancies],
                "missing_fields": list(self.missing_fields),
                "missing_documents": list(self.missing_documents),
                "beneficial_ownership_issues": [i.to_dict() for i in self.beneficial_ownership_issues],
                "beneficial_owners": [o.to_dict() for o in self.beneficial_owners],
            },
            "judge_fallback": self.judge_fallback,
        }
