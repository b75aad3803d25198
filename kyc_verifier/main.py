"""FastAPI application entry point."""

import json
import os
import tempfile
import time
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from kyc_verifier.api import requirements, verification
from kyc_verifier.config import RUNS_DIR, REPORTS_DIR

logger = logging.getLogger(__name__)

RUN_TTL_SECONDS = 7 * 24 * 60 * 60  # 7 days


def _cleanup_stale_runs():
    """Delete run records and reports older than RUN_TTL.
    Also recover zombie runs stuck in 'running' or 'queued' state."""
    now = time.time()
    cleaned = 0
    zombie_fixed = 0

    for directory, pattern in ((RUNS_DIR, "*.json"), (REPORTS_DIR, "*.html")):
        for f in directory.glob(pattern):
            if now - f.stat().st_mtime > RUN_TTL_SECONDS:
                f.unlink(missing_ok=True)
                cleaned += 1

    # Any run still queued/running at startup was interrupted by a restart
    for f in RUNS_DIR.glob("*.json"):
        try:
            data = json.loads(f.read_text(encoding="utf-8"))
            if data.get("status") in ("running", "queued"):
                data["status"] = "failed"
                data["error"] = "Server restarted during verification. Please re-run."
                fd, tmp_path = tempfile.mkstemp(dir=str(RUNS_DIR), suffix=".tmp", prefix="zombie_")
                try:
                    with os.fdopen(fd, "w", encoding="utf-8") as tmp:
                        tmp.write(json.dumps(data, indent=2, default=str, ensure_ascii=False))
                    os.replace(tmp_path, str(f))
                except BaseException:
                    try:
                        os.unlink(tmp_path)
                    except OSError:
                        pass
                    raise
                zombie_fixed += 1
        except (json.JSONDecodeError, OSError):
            pass

    if cleaned:
        logger.info(f"Startup cleanup: removed {cleaned} stale file(s)")
    if zombie_fixed:
        logger.info(f"Startup cleanup: recovered {zombie_fixed} interrupted run(s)")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: cleanup stale runs on startup."""
    _cleanup_stale_runs()
    yield


app = FastAPI(
    title="KYC Verification Engine",
    description="Discrepancy, requirement and beneficial ownership verification for directors and shareholders",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(verification.router, prefix="/api/verify", tags=["Verification"])
app.include_router(requirements.router, prefix="/api/requirements", tags=["Requirements"])


@app.get("/api/health")
async def health():
    return {"status": "operational", "service": "KYC Verification Engine"}
