"""Verification state machine: one terminal status per entity per run.

Precedence (first match wins, earlier checks are strictly more severe):
  1. genuine discrepancies          -> notverified
  2. missing fields / documents     -> pending
  3. beneficial ownership issues    -> beneficial_ownership_incomplete
  4. otherwise                      -> verified

``decide_status`` is pure: same bundles in, same status and detail out.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from kyc_verifier.config import (
    STATUS_VERIFIED, STATUS_PENDING, STATUS_NOT_VERIFIED, STATUS_BO_INCOMPLETE,
)
from kyc_verifier.pipeline.models import (
    BeneficialOwner, EntityRecord, GenuineDiscrepancy, OwnershipIssue,
    ResolvedDiscrepancy, VerificationResult,
)


@dataclass(frozen=True)
class DiscrepancyBundle:
    genuine: tuple[GenuineDiscrepancy, ...] = ()
    resolved: tuple[ResolvedDiscrepancy, ...] = ()


@dataclass(frozen=True)
class RequirementBundle:
    missing_fields: tuple[str, ...] = ()
    missing_documents: tuple[str, ...] = ()


@dataclass(frozen=True)
class OwnershipBundle:
    issues: tuple[OwnershipIssue, ...] = ()
    owners: tuple[BeneficialOwner, ...] = field(default=(), compare=False)


@dataclass(frozen=True)
class StatusDecision:
    status: str
    detail: dict | None


def decide_status(
    discrepancies: DiscrepancyBundle,
    requirements: RequirementBundle,
    ownership: OwnershipBundle,
) -> StatusDecision:
    """Classify an entity from its three input bundles."""
    if discrepancies.genuine:
        return StatusDecision(STATUS_NOT_VERIFIED, {
            "status": "Discrepancies detected",
            "fields": [d.field for d in discrepancies.genuine],
            "discrepancies": [d.to_dict() for d in discrepancies.genuine],
        })
    if requirements.missing_fields or requirements.missing_documents:
        return StatusDecision(STATUS_PENDING, {
            "status": "Required fields or documents missing",
            "missing_fields": list(requirements.missing_fields),
            "missing_documents": list(requirements.missing_documents),
        })
    if ownership.issues:
        return StatusDecision(STATUS_BO_INCOMPLETE, {
            "status": "Beneficial ownership verification incomplete",
            "issues": [i.to_dict() for i in ownership.issues],
        })
    return StatusDecision(STATUS_VERIFIED, None)


def build_result(
    record: EntityRecord,
    discrepancies: DiscrepancyBundle,
    requirements: RequirementBundle,
    ownership: OwnershipBundle,
    judge_fallback: bool = False,
) -> VerificationResult:
    """Assemble the full VerificationResult for one entity in one step."""
    decision = decide_status(discrepancies, requirements, ownership)
    return VerificationResult(
        entity_id=record.id,
        entity_kind=record.kind,
        name=record.name,
        classification=record.classification,
        status=decision.status,
        kyc_status_detail=decision.detail,
        genuine_discrepancies=list(discrepancies.genuine),
        resolved_discrepancies=list(discrepancies.resolved),
        missing_fields=list(requirements.missing_fields),
        missing_documents=list(requirements.missing_documents),
        beneficial_ownership_issues=list(ownership.issues),
        beneficial_owners=list(ownership.owners),
        judge_fallback=judge_fallback,
    )
