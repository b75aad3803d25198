"""Verification orchestrator: runs the engine over every entity of a company.

Pipeline per run:
  1. Fetch all entities of one kind from the Fact Store (one snapshot each)
  2. Skip entities already ``notverified`` unless re-triggered
  3. Build the ownership graph once (shareholders only), read-only afterwards
  4. Fan out: detect → judge → requirements → ownership → state machine,
     bounded by an asyncio.Semaphore
  5. Write each status back as soon as it is decided
  6. Aggregate into a RunSummary

Failures stay scoped: a Judge outage fails that entity closed, a
write-back failure is recorded in ``persist_failures``, an unexpected
error while evaluating one entity leaves it ``pending``.  Only the initial
Fact Store read can fail a whole run.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import tempfile
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Awaitable, Iterable

from kyc_verifier.config import (
    RUNS_DIR, STATUS_NOT_VERIFIED, STATUS_PENDING, TRACE_ENABLED, VERIFICATION_CONCURRENCY, VERIFICATION_STATUSES,
)
from kyc_verifier.pipeline.discrepancy import detect_entity_discrepancies
from kyc_verifier.pipeline.errors import KYCVerificationError
from kyc_verifier.pipeline.fact_store import FactStore
from kyc_verifier.pipeline.judge import DiscrepancyJudge, judge_discrepancies
from kyc_verifier.pipeline.models import EntityRecord, RequirementSet, VerificationResult
from kyc_verifier.pipeline.ownership import (
    OwnershipGraph, build_ownership_graph, collect_known_statuses, node_id,
    ownership_issues, resolve_beneficial_owners,
)
from kyc_verifier.pipeline.requirements import (
    CONFIGURATION_ERROR_PREFIX, evaluate_requirements, load_requirements,
)
from kyc_verifier.pipeline.state_machine import (
    DiscrepancyBundle, OwnershipBundle, RequirementBundle, build_result,
)
from kyc_verifier.reports.generator import render_requirements_summary, render_run_summary

logger = logging.getLogger(__name__)

EVALUATION_ERROR_PREFIX = "evaluation error"

# Type for progress callback: async fn(stage, message, details_dict)
ProgressCallback = Callable[[str, str, dict], Awaitable[None]]


def _trace(msg: str):
    if TRACE_ENABLED:
        logger.debug(f"[TRACE] {msg}")


async def _noop_cb(stage: str, message: str, details: dict) -> None:
    pass


# ═══════════════════════════════════════════════════
# RUN SUMMARY
# ═══════════════════════════════════════════════════

@dataclass
class PersistFailure:
    entity_id: Any
    error: str

    def to_dict(self) -> dict:
        return {"entity_id": self.entity_id, "error": self.error}


@dataclass
class RunSummary:
    company: str
    entity_kind: str
    processed: int = 0
    skipped: list[Any] = field(default_factory=list)
    counts: dict[str, int] = field(default_factory=lambda: {s: 0 for s in VERIFICATION_STATUSES})
    persist_failures: list[PersistFailure] = field(default_factory=list)
    results: list[VerificationResult] = field(default_factory=list)
    summary: str = ""

    def to_dict(self) -> dict:
        return {
            "company": self.company,
            "entity_kind": self.entity_kind,
            "processed": self.processed,
            "skipped": list(self.skipped),
            "counts": dict(self.counts),
            "persist_failures": [f.to_dict() for f in self.persist_failures],
            "results": [r.to_dict() for r in self.results],
            "summary": self.summary,
        }


# ═══════════════════════════════════════════════════
# PER-ENTITY EVALUATION
# ═══════════════════════════════════════════════════

async def evaluate_entity(
    record: EntityRecord,
    *,
    company: str,
    judge: DiscrepancyJudge,
    requirements: RequirementSet,
    requirements_summary: str = "",
    ownership_graph: OwnershipGraph | None = None,
    known_statuses: dict[str, str | None] | None = None,
) -> VerificationResult:
    """Evaluate one entity snapshot into exactly one VerificationResult."""
    discrepancies = detect_entity_discrepancies(record)
    outcome = await judge_discrepancies(judge, record, discrepancies, requirements_summary)

    evaluation = evaluate_requirements(record, requirements)
    missing_documents = list(evaluation.missing_documents)

    issues, owners = [], []
    if record.kind == "shareholder" and record.is_corporate and ownership_graph is not None:
        threshold = requirements.beneficial_ownership_threshold
        resolution = resolve_beneficial_owners(
            ownership_graph, company, threshold,
            via=node_id(record), known_statuses=known_statuses,
        )
        for err in resolution.integrity_errors:
            missing_documents.append(f"{CONFIGURATION_ERROR_PREFIX}: {err}")
        issues = ownership_issues(resolution, record, threshold)
        owners = resolution.owners

    result = build_result(
        record,
        DiscrepancyBundle(tuple(outcome.genuine), tuple(outcome.resolved)),
        RequirementBundle(tuple(evaluation.missing_fields), tuple(missing_documents)),
        OwnershipBundle(tuple(issues), tuple(owners)),
        judge_fallback=outcome.fallback,
    )
    _trace(f"RESULT {record.kind} {record.id} ({record.name}): {result.status}")
    return result


def _error_result(record: EntityRecord, error: Exception) -> VerificationResult:
    return build_result(
        record,
        DiscrepancyBundle(),
        RequirementBundle((), (f"{EVALUATION_ERROR_PREFIX}: {type(error).__name__}: {error}",)),
        OwnershipBundle(),
    )


def select_entities(
    records: Iterable[EntityRecord],
    include_notverified: bool = False,
    retrigger_ids: Iterable[Any] | None = None,
) -> tuple[list[EntityRecord], list[Any]]:
    """Split records into (to evaluate, skipped ids).

    ``notverified`` is sticky: such entities are only re-evaluated when
    explicitly re-triggered (all of them, or by id).
    """
    retrigger = {str(i) for i in (retrigger_ids or [])}
    selected, skipped = [], []
    for record in records:
        if (
            record.prior_verification_status == STATUS_NOT_VERIFIED
            and not include_notverified
            and str(record.id) not in retrigger
        ):
            skipped.append(record.id)
            continue
        selected.append(record)
    return selected, skipped


async def _persist(store: FactStore, result: VerificationResult) -> PersistFailure | None:
    detail = json.dumps(result.kyc_status_detail, ensure_ascii=False) if result.kyc_status_detail else None
    try:
        await store.update_verification(result.entity_kind, result.entity_id, result.status, detail)
    except KYCVerificationError as e:
        logger.error(f"Write-back failed for {result.entity_kind} {result.entity_id}: {e}")
        return PersistFailure(entity_id=result.entity_id, error=str(e))
    except Exception as e:
        logger.exception(f"Write-back raised unexpectedly for {result.entity_kind} {result.entity_id}")
        return PersistFailure(entity_id=result.entity_id, error=f"{type(e).__name__}: {e}")
    logger.info(f"Updated {result.entity_kind} {result.entity_id} to {result.status}")
    return None


# ═══════════════════════════════════════════════════
# RUN
# ═══════════════════════════════════════════════════

async def run_verification(
    company: str,
    kind: str,
    *,
    store: FactStore,
    judge: DiscrepancyJudge,
    requirements: RequirementSet | None = None,
    include_notverified: bool = False,
    retrigger_ids: Iterable[Any] | None = None,
    concurrency: int = VERIFICATION_CONCURRENCY,
    on_progress: ProgressCallback | None = None,
) -> RunSummary:
    """Verify every ``kind`` entity of ``company`` and write statuses back.

    Cancelling the task stops the run: statuses already written stay
    written (each write is a single status update), nothing else is.

    Raises:
        TransientCollaboratorError / MalformedResponseError: the Fact Store
            read failed, so there is nothing to verify against.
    """
    cb = on_progress or _noop_cb
    if requirements is None:
        requirements = load_requirements(company)
    requirements_summary = render_requirements_summary(requirements)

    await cb("fetch", f"Fetching {kind}s for {company}", {"company": company, "kind": kind})
    records = await store.get_entities(company, kind)
    summary = RunSummary(company=company, entity_kind=kind)

    if not records:
        logger.warning(f"Verification [{company}/{kind}]: no {kind}s found")
        summary.summary = f"No {kind}s to verify for {company}"
        await cb("done", summary.summary, {"processed": 0})
        return summary

    selected, summary.skipped = select_entities(records, include_notverified, retrigger_ids)
    logger.info(
        f"Verification [{company}/{kind}]: {len(selected)} to evaluate, "
        f"{len(summary.skipped)} skipped (already {STATUS_NOT_VERIFIED})"
    )

    graph, known_statuses = None, None
    if kind == "shareholder":
        graph = build_ownership_graph(company, records)
        known_statuses = collect_known_statuses(records)

    semaphore = asyncio.Semaphore(max(1, concurrency))
    done_count = 0

    async def _worker(record: EntityRecord) -> tuple[VerificationResult, PersistFailure | None]:
        nonlocal done_count
        async with semaphore:
            try:
                result = await evaluate_entity(
                    record,
                    company=company,
                    judge=judge,
                    requirements=requirements,
                    requirements_summary=requirements_summary,
                    ownership_graph=graph,
                    known_statuses=known_statuses,
                )
            except Exception as e:
                logger.exception(f"Evaluation failed for {kind} {record.id}; marking {STATUS_PENDING}")
                result = _error_result(record, e)
            failure = await _persist(store, result)
            done_count += 1
            await cb("entity_done", f"{record.name or record.id}: {result.status}", {
                "entity_id": record.id,
                "status": result.status,
                "completed": done_count,
                "total": len(selected),
            })
            return result, failure

    outcomes = await asyncio.gather(*(_worker(r) for r in selected))

    for result, failure in outcomes:
        summary.results.append(result)
        summary.counts[result.status] = summary.counts.get(result.status, 0) + 1
        if failure is not None:
            summary.persist_failures.append(failure)
    summary.processed = len(summary.results)
    summary.summary = render_run_summary(summary.to_dict(), requirements_summary)

    logger.info(
        f"Verification [{company}/{kind}] complete: "
        + ", ".join(f"{s}={summary.counts.get(s, 0)}" for s in VERIFICATION_STATUSES)
        + (f", {len(summary.persist_failures)} write-back failure(s)" if summary.persist_failures else "")
    )
    await cb("done", "Verification complete", {"processed": summary.processed, "counts": summary.counts})
    return summary


# ═══════════════════════════════════════════════════
# RUN RECORDS (API)
# ═══════════════════════════════════════════════════

_RUN_ID_RE = re.compile(r"^[a-f0-9]{8,32}$")


class VerificationRun:
    """One verification run requested through the API, persisted as JSON."""

    def __init__(self, company: str = "", entity_kind: str = ""):
        self.run_id = uuid.uuid4().hex[:12]
        self.created_at = datetime.now().isoformat()
        self.company = company
        self.entity_kind = entity_kind
        self.status = "queued"
        self.options: dict = {}
        self.progress: list[dict] = []
        self.summary: dict | None = None
        self.error: str | None = None

    def log(self, stage: str, message: str, detail: dict | None = None) -> dict:
        entry = {
            "timestamp": datetime.now().isoformat(),
            "stage": stage,
            "message": message,
        }
        if detail:
            entry["detail"] = detail
        self.progress.append(entry)
        return entry

    def save(self):
        """Persist run state to disk as JSON (atomic write).

        Writes to a temporary file first, then replaces the target via
        os.replace(), so readers never see half-written JSON.
        """
        run_file = RUNS_DIR / f"{self.run_id}.json"
        data = json.dumps(self.to_dict(), indent=2, default=str, ensure_ascii=False)
        fd, tmp_path = tempfile.mkstemp(dir=str(RUNS_DIR), suffix=".tmp", prefix="run_")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as tmp:
                tmp.write(data)
            os.replace(tmp_path, str(run_file))
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "created_at": self.created_at,
            "company": self.company,
            "entity_kind": self.entity_kind,
            "status": self.status,
            "options": self.options,
            "progress": self.progress,
            "summary": self.summary,
            "error": self.error,
        }

    # Only these fields can be loaded from disk
    _LOADABLE_FIELDS = frozenset({
        "run_id", "created_at", "company", "entity_kind", "status",
        "options", "progress", "summary", "error",
    })

    @classmethod
    def load(cls, run_id: str) -> "VerificationRun":
        if not _RUN_ID_RE.match(run_id or ""):
            raise FileNotFoundError(f"Run {run_id} not found")
        run_file = RUNS_DIR / f"{run_id}.json"
        if not run_file.exists():
            raise FileNotFoundError(f"Run {run_id} not found")
        data = json.loads(run_file.read_text(encoding="utf-8"))
        run = cls()
        for key, value in data.items():
            if key in cls._LOADABLE_FIELDS:
                setattr(run, key, value)
            else:
                logger.warning(f"Run {run_id}: ignoring unknown field '{key}'")
        return run
