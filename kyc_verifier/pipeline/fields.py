"""Field registry: single source of truth for per-entity-type field sets.

Fact Store records carry an open ``<field>_source`` column per field.  The
engine only ever looks at the fixed enumerations below, so a typo or a
stray column upstream can never turn into a discrepancy or a requirement.

Each entity type defines:
  - FIELDS: fields whose sources are compared for discrepancies
  - REQUIRED: fields that must have a non-empty primary value
"""

from __future__ import annotations

# ───────────────────────────────────────────────────────
# Directors (always individuals)
# ───────────────────────────────────────────────────────

DIRECTOR_FIELDS: tuple[str, ...] = (
    "full_name",
    "id_number",
    "id_type",
    "nationality",
    "residential_address",
    "telephone_number",
    "email_address",
)

DIRECTOR_REQUIRED: tuple[str, ...] = (
    "full_name",
    "id_number",
    "id_type",
    "nationality",
    "residential_address",
)

# ───────────────────────────────────────────────────────
# Shareholders: common block + individual or corporate block
# ───────────────────────────────────────────────────────

SHAREHOLDER_COMMON_FIELDS: tuple[str, ...] = (
    "shareholder_type",
    "origin",
    "email_address",
    "telephone_number",
    "number_of_shares",
    "price_per_share",
    "percentage_ownership",
)

INDIVIDUAL_FIELDS: tuple[str, ...] = (
    "full_name",
    "id_number",
    "id_type",
    "nationality",
    "residential_address",
)

CORPORATE_FIELDS: tuple[str, ...] = (
    "company_name",
    "registration_number",
    "registered_address",
    "signatory_name",
    "signatory_email",
)

SHAREHOLDER_COMMON_REQUIRED: tuple[str, ...] = (
    "email_address",
    "number_of_shares",
    "price_per_share",
    "percentage_ownership",
)

INDIVIDUAL_REQUIRED: tuple[str, ...] = INDIVIDUAL_FIELDS
CORPORATE_REQUIRED: tuple[str, ...] = CORPORATE_FIELDS

ALL_FIELDS: frozenset[str] = frozenset(
    DIRECTOR_FIELDS + SHAREHOLDER_COMMON_FIELDS + INDIVIDUAL_FIELDS + CORPORATE_FIELDS
)


def fields_for(kind: str, is_corporate: bool = False) -> tuple[str, ...]:
    """Fields compared for discrepancies, in registry order."""
    if kind == "director":
        return DIRECTOR_FIELDS
    return SHAREHOLDER_COMMON_FIELDS + (CORPORATE_FIELDS if is_corporate else INDIVIDUAL_FIELDS)


def required_fields_for(kind: str, is_corporate: bool = False) -> tuple[str, ...]:
    """Mandatory fields for the entity type, in registry order."""
    if kind == "director":
        return DIRECTOR_REQUIRED
    return SHAREHOLDER_COMMON_REQUIRED + (CORPORATE_REQUIRED if is_corporate else INDIVIDUAL_REQUIRED)


def name_field_for(kind: str, is_corporate: bool = False) -> str:
    return "company_name" if (kind == "shareholder" and is_corporate) else "full_name"
