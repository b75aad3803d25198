"""Requirement evaluator: required documents and mandatory fields.

Maps an entity's classification (individual/corporate x domestic/foreign)
to the document categories its sources must cover, and checks the
mandatory field set for its type.  Requirement lists are configuration:
``DEFAULT_REQUIREMENTS`` in config, overridable per company with a JSON
file in ``REQUIREMENTS_DIR``.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Sequence

from kyc_verifier.config import (
    DEFAULT_REQUIREMENTS, DOMESTIC_JURISDICTION_ALIASES, REQUIREMENTS_DIR, TRACE_ENABLED,
)
from kyc_verifier.pipeline.errors import DataIntegrityError
from kyc_verifier.pipeline.fields import required_fields_for
from kyc_verifier.pipeline.models import EntityClassification, EntityRecord, RequirementSet

logger = logging.getLogger(__name__)

CONFIGURATION_ERROR_PREFIX = "configuration error"


def _trace(msg: str):
    if TRACE_ENABLED:
        logger.debug(f"[TRACE] {msg}")


# ═══════════════════════════════════════════════════
# CONFIGURATION
# ═══════════════════════════════════════════════════

_SAFE_NAME_RE = re.compile(r"[^A-Za-z0-9_.-]+")


def _requirements_file(company: str):
    safe = _SAFE_NAME_RE.sub("_", company.strip()).strip("._") or "default"
    return REQUIREMENTS_DIR / f"{safe}.json"


def load_requirements(company: str | None = None) -> RequirementSet:
    """Return the effective RequirementSet for a company.

    Per-company JSON overrides are merged key-by-key over the defaults, so
    a file may override a single list.  An unreadable override file is
    logged and ignored.
    """
    config: dict[str, Any] = dict(DEFAULT_REQUIREMENTS)
    if company:
        path = _requirements_file(company)
        if path.exists():
            try:
                override = json.loads(path.read_text(encoding="utf-8"))
                if isinstance(override, dict):
                    config.update(override)
                    logger.info(f"Requirements: using overrides for {company} from {path.name}")
                else:
                    logger.warning(f"Requirements file {path} is not a JSON object, using defaults")
            except (OSError, json.JSONDecodeError) as e:
                logger.warning(f"Requirements file {path} unreadable ({e}), using defaults")
    return RequirementSet.from_config(config)


# ═══════════════════════════════════════════════════
# CLASSIFICATION
# ═══════════════════════════════════════════════════

def _is_domestic(origin: Any, aliases: Iterable[str]) -> bool:
    if origin is None:
        return False
    return str(origin).strip().lower() in {a.lower() for a in aliases}


def classify_entity(
    kind: str,
    attributes: dict[str, Any],
    domestic_aliases: Sequence[str] = DOMESTIC_JURISDICTION_ALIASES,
) -> EntityClassification | None:
    """Derive the classification from type/origin attributes.

    Directors are individuals; their origin is their nationality.
    Shareholders need a recognisable ``shareholder_type``; anything else
    returns ``None`` (handled downstream as a configuration error).
    """
    if kind == "director":
        domestic = _is_domestic(attributes.get("nationality"), domestic_aliases)
        return EntityClassification.INDIVIDUAL_DOMESTIC if domestic else EntityClassification.INDIVIDUAL_FOREIGN

    shareholder_type = str(attributes.get("shareholder_type") or "").strip().lower()
    domestic = _is_domestic(attributes.get("origin"), domestic_aliases)
    if shareholder_type == "individual":
        return EntityClassification.INDIVIDUAL_DOMESTIC if domestic else EntityClassification.INDIVIDUAL_FOREIGN
    if shareholder_type == "corporate":
        return EntityClassification.CORPORATE_DOMESTIC if domestic else EntityClassification.CORPORATE_FOREIGN
    return None


# ═══════════════════════════════════════════════════
# DOCUMENTS
# ═══════════════════════════════════════════════════

def required_categories(
    classification: EntityClassification,
    requirements: RequirementSet,
    ownership_percentage: float | None = None,
) -> list[str]:
    """Ordered required categories, including the ownership-driven extra."""
    required = list(requirements.documents_for(classification))
    if (
        classification.is_corporate
        and ownership_percentage is not None
        and ownership_percentage >= requirements.beneficial_ownership_threshold
        and requirements.ownership_category not in required
    ):
        required.append(requirements.ownership_category)
    return required


def find_missing_documents(required: Iterable[str], observed: Iterable[str]) -> list[str]:
    """Required categories not matched by any observed category.

    A required category is satisfied when it equals, or is a substring of,
    an observed category (case-insensitive).
    """
    observed_lower = [c.lower() for c in observed if c]
    missing = []
    for category in required:
        needle = category.lower()
        if not any(needle in obs for obs in observed_lower):
            missing.append(category)
    return missing


# ═══════════════════════════════════════════════════
# FIELDS
# ═══════════════════════════════════════════════════

def find_missing_fields(record: EntityRecord) -> list[str]:
    """Mandatory fields with no sources or an empty primary value."""
    missing = []
    for name in required_fields_for(record.kind, record.is_corporate):
        primary = record.primary_value(name)
        if primary is None or not str(primary).strip():
            missing.append(name)
    return missing


# ═══════════════════════════════════════════════════
# ENTRY POINT
# ═══════════════════════════════════════════════════

@dataclass
class RequirementEvaluation:
    missing_documents: list[str] = field(default_factory=list)
    missing_fields: list[str] = field(default_factory=list)
    required_documents: list[str] = field(default_factory=list)
    integrity_error: DataIntegrityError | None = None

    @property
    def satisfied(self) -> bool:
        return not self.missing_documents and not self.missing_fields


def evaluate_requirements(record: EntityRecord, requirements: RequirementSet) -> RequirementEvaluation:
    """Evaluate required documents and mandatory fields for one entity.

    Configuration problems (no classification, no requirement list for the
    classification) do not raise: they become a ``configuration error``
    entry in ``missing_documents`` so the entity lands in ``pending``.
    """
    evaluation = RequirementEvaluation(missing_fields=find_missing_fields(record))

    try:
        if record.classification is None:
            raise DataIntegrityError(
                f"cannot classify {record.kind} {record.id} "
                f"(shareholder_type={record.attributes.get('shareholder_type')!r})"
            )
        required = required_categories(
            record.classification, requirements, record.ownership_percentage,
        )
    except DataIntegrityError as e:
        logger.warning(f"Requirements for {record.kind} {record.id}: {e}")
        evaluation.integrity_error = e
        evaluation.missing_documents.append(f"{CONFIGURATION_ERROR_PREFIX}: {e}")
        return evaluation

    evaluation.required_documents = required
    evaluation.missing_documents = find_missing_documents(required, record.observed_categories())
    _trace(
        f"REQUIREMENTS {record.kind} {record.id} [{record.classification.value}] "
        f"required={required} missing_docs={evaluation.missing_documents} "
        f"missing_fields={evaluation.missing_fields}"
    )
    return evaluation
