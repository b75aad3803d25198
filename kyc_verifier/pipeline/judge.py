"""Discrepancy Judge: decides which detected discrepancies are genuine.

The detector reports every exact-string mismatch; the Judge is the only
place semantic equivalence ("USA" vs "American") is considered.  It
returns one boolean per discrepancy and nothing else feeds back into the
engine.

Fail-closed: if the Judge cannot be reached, answers in the wrong shape,
or skips a discrepancy, that discrepancy is treated as genuine.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Sequence

from kyc_verifier.config import PROMPTS_DIR, TRACE_ENABLED
from kyc_verifier.pipeline.errors import KYCVerificationError, MalformedResponseError
from kyc_verifier.pipeline.llm_client import call_llm
from kyc_verifier.pipeline.models import (
    Discrepancy, EntityRecord, GenuineDiscrepancy, ResolvedDiscrepancy,
)
from kyc_verifier.pipeline.schemas import JUDGE_SCHEMA

logger = logging.getLogger(__name__)

NOT_EVALUATED = "not evaluated by discrepancy judge"
JUDGE_UNAVAILABLE = "discrepancy judge unavailable"


def _trace(msg: str):
    if TRACE_ENABLED:
        logger.debug(f"[TRACE] {msg}")


def _load_prompt(name: str) -> str:
    return (PROMPTS_DIR / f"{name}.txt").read_text(encoding="utf-8")


@dataclass(frozen=True)
class JudgeVerdict:
    field: str
    values: tuple[str, ...]
    is_genuine: bool
    explanation: str = ""


# ═══════════════════════════════════════════════════
# REQUEST / RESPONSE
# ═══════════════════════════════════════════════════

def build_judge_request(
    record: EntityRecord,
    discrepancies: Sequence[Discrepancy],
    requirements_summary: str = "",
) -> dict:
    """Judge request for one entity.

    Sources are reduced to name and category: the Judge needs to know where
    each value came from, not the document ids.
    """
    if record.kind == "director":
        entity_type = "director"
        origin = record.primary_value("nationality") or record.attributes.get("nationality")
    else:
        entity_type = f"{record.attributes.get('shareholder_type') or 'unknown'} shareholder"
        origin = record.attributes.get("origin")

    return {
        "entity_name": record.name or "Unknown",
        "entity_type": entity_type,
        "origin": origin or "Unknown",
        "requirements_summary": requirements_summary,
        "discrepancies": [
            {
                "field": d.field,
                "values": list(d.distinct_values),
                "sources": {
                    value: [
                        {"document_name": s.document_name, "document_category": s.document_category}
                        for s in srcs
                    ]
                    for value, srcs in d.sources.items()
                },
            }
            for d in discrepancies
        ],
        "source_document_categories": record.observed_categories(),
    }


def _format_request(request: dict) -> str:
    parts = [
        "Evaluate whether the following discrepancies in this entity's KYC information "
        "are genuine issues or variations of the same information.",
        "",
        f"Entity: {request['entity_name']}",
        f"Entity type: {request['entity_type']}",
        f"Origin: {request['origin']}",
    ]
    if request.get("requirements_summary"):
        parts += ["", "Company requirements:", request["requirements_summary"]]
    parts += [
        "",
        "Source document categories: " + (", ".join(request["source_document_categories"]) or "none"),
        "",
        "Discrepancies:",
        json.dumps(request["discrepancies"], indent=2, ensure_ascii=False),
    ]
    return "\n".join(parts)


def parse_judge_response(raw: Any) -> list[JudgeVerdict]:
    """Parse ``{"evaluated_discrepancies": [...]}`` into verdicts.

    Items missing a field name or a boolean verdict are dropped (their
    discrepancy then counts as not evaluated).  A response without the
    list at all raises ``MalformedResponseError``.
    """
    if not isinstance(raw, dict) or not isinstance(raw.get("evaluated_discrepancies"), list):
        raise MalformedResponseError(
            "judge", "response has no evaluated_discrepancies list",
            raw=json.dumps(raw, default=str)[:2000],
        )
    verdicts = []
    for item in raw["evaluated_discrepancies"]:
        if not isinstance(item, dict):
            continue
        field_name = item.get("field")
        genuine = item.get("is_genuine_discrepancy")
        if not isinstance(field_name, str) or not isinstance(genuine, bool):
            logger.warning(f"Judge: dropping malformed verdict {item!r}")
            continue
        values = item.get("values") if isinstance(item.get("values"), list) else []
        verdicts.append(JudgeVerdict(
            field=field_name,
            values=tuple(str(v) for v in values),
            is_genuine=genuine,
            explanation=str(item.get("explanation") or ""),
        ))
    return verdicts


# ═══════════════════════════════════════════════════
# JUDGES
# ═══════════════════════════════════════════════════

class DiscrepancyJudge:
    """Interface: one round trip per entity."""

    async def evaluate(self, request: dict) -> list[JudgeVerdict]:
        raise NotImplementedError


class LLMDiscrepancyJudge(DiscrepancyJudge):
    """Judge backed by the local Ollama model."""

    def __init__(self, system_prompt: str | None = None, temperature: float = 0.0):
        self.system_prompt = system_prompt if system_prompt is not None else _load_prompt("judge_discrepancies")
        self.temperature = temperature

    async def evaluate(self, request: dict) -> list[JudgeVerdict]:
        raw = await call_llm(
            prompt=_format_request(request),
            system_prompt=self.system_prompt,
            temperature=self.temperature,
            expect_json=JUDGE_SCHEMA,
            task_label=f"Judge: {request.get('entity_name', 'entity')}",
        )
        return parse_judge_response(raw)


# ═══════════════════════════════════════════════════
# CLASSIFICATION
# ═══════════════════════════════════════════════════

@dataclass
class JudgeOutcome:
    genuine: list[GenuineDiscrepancy] = field(default_factory=list)
    resolved: list[ResolvedDiscrepancy] = field(default_factory=list)
    fallback: bool = False
    error: str | None = None


def classify_discrepancies(
    discrepancies: Sequence[Discrepancy],
    verdicts: Sequence[JudgeVerdict],
) -> JudgeOutcome:
    """Split discrepancies into genuine and resolved using the verdicts.

    Verdicts are matched by field (first verdict per field wins).  Values
    always come from detection, never from the Judge's echo.
    """
    by_field: dict[str, JudgeVerdict] = {}
    for v in verdicts:
        by_field.setdefault(v.field, v)

    outcome = JudgeOutcome()
    for d in discrepancies:
        verdict = by_field.get(d.field)
        if verdict is None:
            outcome.genuine.append(GenuineDiscrepancy(d.field, d.distinct_values, NOT_EVALUATED))
        elif verdict.is_genuine:
            outcome.genuine.append(GenuineDiscrepancy(d.field, d.distinct_values, verdict.explanation))
        else:
            outcome.resolved.append(ResolvedDiscrepancy(d.field, d.distinct_values, verdict.explanation))
    return outcome


def fail_closed(discrepancies: Sequence[Discrepancy], reason: str) -> JudgeOutcome:
    """Every discrepancy genuine, explained by ``reason``."""
    return JudgeOutcome(
        genuine=[
            GenuineDiscrepancy(d.field, d.distinct_values, f"{JUDGE_UNAVAILABLE}: {reason}")
            for d in discrepancies
        ],
        fallback=True,
        error=reason,
    )


async def judge_discrepancies(
    judge: DiscrepancyJudge,
    record: EntityRecord,
    discrepancies: Sequence[Discrepancy],
    requirements_summary: str = "",
) -> JudgeOutcome:
    """Run the Judge for one entity; any Judge failure fails closed."""
    if not discrepancies:
        return JudgeOutcome()

    request = build_judge_request(record, discrepancies, requirements_summary)
    try:
        verdicts = await judge.evaluate(request)
    except KYCVerificationError as e:
        logger.warning(
            f"Judge failed for {record.kind} {record.id}: {e}; "
            f"treating {len(discrepancies)} discrepancy(ies) as genuine"
        )
        return fail_closed(discrepancies, str(e))
    except Exception as e:
        logger.exception(
            f"Judge raised unexpectedly for {record.kind} {record.id}; "
            f"treating {len(discrepancies)} discrepancy(ies) as genuine"
        )
        return fail_closed(discrepancies, f"{type(e).__name__}: {e}")

    outcome = classify_discrepancies(discrepancies, verdicts)
    uncovered = sum(1 for g in outcome.genuine if g.explanation == NOT_EVALUATED)
    if uncovered:
        logger.warning(f"Judge skipped {uncovered} discrepancy(ies) for {record.kind} {record.id}")
    _trace(
        f"JUDGE {record.kind} {record.id}: genuine={[g.field for g in outcome.genuine]} "
        f"resolved={[r.field for r in outcome.resolved]}"
    )
    return outcome
