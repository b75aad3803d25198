"""Verification run endpoints with SSE progress streaming."""

import json
import asyncio
import logging
from fastapi import APIRouter, HTTPException
from fastapi.responses import HTMLResponse, JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from kyc_verifier.config import ENTITY_KINDS, MAX_CONCURRENT_RUNS, RUNS_DIR
from kyc_verifier.pipeline.fact_store import FactStore, HttpFactStore
from kyc_verifier.pipeline.judge import DiscrepancyJudge, LLMDiscrepancyJudge
from kyc_verifier.pipeline.llm_client import check_ollama_status
from kyc_verifier.pipeline.orchestrator import VerificationRun, run_verification
from kyc_verifier.reports.generator import render_html_report

router = APIRouter()
logger = logging.getLogger(__name__)

# Semaphore limits how many verification runs execute concurrently
_run_semaphore = asyncio.Semaphore(MAX_CONCURRENT_RUNS)

# Strong references to background runs until they finish
_background_tasks: set[asyncio.Task] = set()


def get_fact_store() -> FactStore:
    return HttpFactStore()


def get_judge() -> DiscrepancyJudge:
    return LLMDiscrepancyJudge()


# ── Run load helper with retry (file-lock resilience) ──

_LOAD_MAX_RETRIES = 4
_LOAD_BACKOFF_BASE = 0.4       # seconds, escalates: 0.4, 0.8, 1.6


async def _load_run_with_retry(run_id: str) -> VerificationRun:
    """Load a run from disk, retrying on transient OS/file errors.

    Raises:
        HTTPException 404  – run file does not exist
        HTTPException 503  – transient file error after all retries
    """
    last_exc: Exception | None = None
    for attempt in range(_LOAD_MAX_RETRIES):
        try:
            return VerificationRun.load(run_id)
        except FileNotFoundError:
            raise HTTPException(status_code=404, detail="Run not found")
        except (PermissionError, OSError, json.JSONDecodeError, UnicodeDecodeError) as exc:
            last_exc = exc
            wait = _LOAD_BACKOFF_BASE * (2 ** attempt)
            logger.warning(
                "Run %s load attempt %d/%d failed (%s: %s), retrying in %.1fs",
                run_id, attempt + 1, _LOAD_MAX_RETRIES, type(exc).__name__, exc, wait,
            )
            await asyncio.sleep(wait)

    logger.error("Run %s: all %d load attempts failed, last error: %s", run_id, _LOAD_MAX_RETRIES, last_exc)
    raise HTTPException(
        status_code=503,
        detail="Temporary file access error, please retry in a few seconds.",
    )


def _safe_json_response(data: dict, status_code: int = 200) -> JSONResponse:
    """JSONResponse serialized the same way run.save() writes to disk."""
    content = json.loads(json.dumps(data, default=str, ensure_ascii=False))
    return JSONResponse(content=content, status_code=status_code)


class VerifyRequest(BaseModel):
    include_notverified: bool = False
    retrigger_ids: list[str | int] = Field(default_factory=list)


@router.post("/{company}/{kind}")
async def start_verification(company: str, kind: str, request: VerifyRequest | None = None):
    """Start a verification run for one entity kind of a company. Returns run_id.

    Use /api/verify/runs/{run_id}/stream for SSE progress updates.
    """
    if kind not in ENTITY_KINDS:
        raise HTTPException(status_code=400, detail=f"Unknown entity kind '{kind}', expected one of {ENTITY_KINDS}")
    if not company.strip():
        raise HTTPException(status_code=400, detail="Company name is required")
    request = request or VerifyRequest()

    run = VerificationRun(company=company, entity_kind=kind)
    run.options = request.model_dump()
    run.save()

    task = asyncio.create_task(_run_verification_bg(run.run_id))
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)

    return {
        "run_id": run.run_id,
        "status": "queued",
        "message": f"Verification started for {kind}s of {company}",
    }


async def _run_verification_bg(run_id: str):
    """Background task to run one verification (held under semaphore)."""
    async with _run_semaphore:
        await _run_verification_inner(run_id)


async def _run_verification_inner(run_id: str):
    """Inner verification runner (held under semaphore)."""
    run: VerificationRun | None = None
    try:
        run = VerificationRun.load(run_id)
        run.status = "running"
        run.log("start", f"Verifying {run.entity_kind}s of {run.company}")
        run.save()

        async def _progress(stage: str, message: str, detail: dict):
            run.log(stage, message, detail)
            run.save()

        summary = await run_verification(
            run.company,
            run.entity_kind,
            store=get_fact_store(),
            judge=get_judge(),
            include_notverified=bool(run.options.get("include_notverified")),
            retrigger_ids=run.options.get("retrigger_ids") or [],
            on_progress=_progress,
        )
        run.summary = summary.to_dict()
        run.status = "completed"
        run.save()
    except Exception as e:
        logger.exception(f"Verification run {run_id} failed")
        # Mark as failed; the in-memory run still holds the progress so far
        try:
            if run is None:
                run = VerificationRun.load(run_id)
            run.status = "failed"
            run.error = str(e)
            run.save()
        except Exception:
            logger.exception(f"Failed to save error state for run {run_id}")


@router.get("/runs")
async def list_runs():
    """List stored runs, newest first."""
    runs = []
    for f in sorted(RUNS_DIR.glob("*.json"), key=lambda p: p.stat().st_mtime, reverse=True):
        try:
            data = json.loads(f.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError):
            continue
        summary = data.get("summary") or {}
        runs.append({
            "run_id": data.get("run_id", f.stem),
            "created_at": data.get("created_at"),
            "company": data.get("company"),
            "entity_kind": data.get("entity_kind"),
            "status": data.get("status"),
            "counts": summary.get("counts"),
        })
    return {"runs": runs}


@router.get("/runs/{run_id}")
async def get_run(run_id: str):
    """Run record: status, progress, and the summary once completed."""
    run = await _load_run_with_retry(run_id)
    return _safe_json_response(run.to_dict())


@router.get("/runs/{run_id}/stream")
async def stream_run(run_id: str):
    """SSE endpoint for streaming run progress."""
    await _load_run_with_retry(run_id)

    async def event_stream():
        last_progress_count = 0
        poll_count = 0
        max_polls = 1800        # 30 min at 1 poll/sec
        heartbeat_interval = 15

        while poll_count < max_polls:
            try:
                run = VerificationRun.load(run_id)
            except FileNotFoundError:
                yield f"data: {json.dumps({'error': 'Run not found'})}\n\n"
                return

            if len(run.progress) > last_progress_count:
                for entry in run.progress[last_progress_count:]:
                    yield f"data: {json.dumps(entry, default=str)}\n\n"
                last_progress_count = len(run.progress)
            elif poll_count % heartbeat_interval == 0 and poll_count > 0:
                yield f": heartbeat {poll_count}s\n\n"

            if run.status in ("completed", "failed"):
                final = {
                    "stage": "final",
                    "status": run.status,
                    "run_id": run.run_id,
                    "counts": (run.summary or {}).get("counts"),
                    "error": run.error,
                }
                yield f"data: {json.dumps(final)}\n\n"
                return

            await asyncio.sleep(1)
            poll_count += 1

        yield f"data: {json.dumps({'error': 'Timeout waiting for verification run'})}\n\n"

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


@router.get("/runs/{run_id}/report/html", response_class=HTMLResponse)
async def get_html_report(run_id: str):
    """Render the HTML report for a completed run."""
    run = await _load_run_with_retry(run_id)
    if run.status != "completed" or not run.summary:
        raise HTTPException(
            status_code=400,
            detail=f"Run not complete. Current status: {run.status}",
        )
    return HTMLResponse(render_html_report(run.summary, run.run_id))


@router.get("/health/llm")
async def check_llm():
    """Check whether the discrepancy judge model is reachable."""
    return await check_ollama_status()
