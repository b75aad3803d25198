"""Application configuration."""

import os
from pathlib import Path
from dotenv import load_dotenv

# Base paths
BASE_DIR = Path(__file__).resolve().parent.parent

# Load .env from project root (before any os.getenv calls)
load_dotenv(BASE_DIR / ".env")
TEMP_DIR = BASE_DIR / "temp"
RUNS_DIR = TEMP_DIR / "runs"
REPORTS_DIR = TEMP_DIR / "reports"
PROMPTS_DIR = BASE_DIR / "prompts"
TEMPLATES_DIR = BASE_DIR / "kyc_verifier" / "reports" / "templates"
REQUIREMENTS_DIR = Path(os.getenv("REQUIREMENTS_DIR", str(BASE_DIR / "requirements")))

# Create directories
for d in [TEMP_DIR, RUNS_DIR, REPORTS_DIR]:
    d.mkdir(parents=True, exist_ok=True)

# Ollama configuration (Discrepancy Judge backend)
OLLAMA_BASE_URL = os.getenv("OLLAMA_BASE_URL", "http://localhost:11434")
OLLAMA_MODEL = os.getenv("OLLAMA_MODEL", "qwen3:32b")
LLM_TIMEOUT = float(os.getenv("LLM_TIMEOUT", "120"))       # Seconds per judge round trip
LLM_MAX_RETRIES = int(os.getenv("LLM_MAX_RETRIES", "3"))
LLM_BACKOFF_CAP = 30                                       # Max seconds between retries
LLM_CONTEXT_WINDOW = 32768
LLM_MAX_INPUT_CHARS = 120000                               # Safety cap before truncation
LLM_USE_STRUCTURED_OUTPUTS = True                          # JSON Schema format instead of "json"

# Fact Store (KYC server) configuration
FACT_STORE_URL = os.getenv("FACT_STORE_URL", "http://localhost:3000")
FACT_STORE_TIMEOUT = float(os.getenv("FACT_STORE_TIMEOUT", "15"))
FACT_STORE_MAX_RETRIES = int(os.getenv("FACT_STORE_MAX_RETRIES", "3"))
FACT_STORE_BACKOFF_BASE = float(os.getenv("FACT_STORE_BACKOFF_BASE", "0.5"))

# Concurrency
VERIFICATION_CONCURRENCY = int(os.getenv("VERIFICATION_CONCURRENCY", "4"))  # Parallel entity evaluations per run
MAX_CONCURRENT_RUNS = int(os.getenv("MAX_CONCURRENT_RUNS", "2"))            # Parallel runs accepted by the API

# Debug trace mode: set KYC_TRACE=1 to get detailed engine logs
TRACE_ENABLED = os.getenv("KYC_TRACE", "").strip().lower() in ("1", "true", "yes")

# Entity kinds handled by the Fact Store
ENTITY_KINDS = ["director", "shareholder"]

# Verification statuses (terminal per run)
STATUS_VERIFIED = "verified"
STATUS_PENDING = "pending"
STATUS_NOT_VERIFIED = "notverified"
STATUS_BO_INCOMPLETE = "beneficial_ownership_incomplete"
VERIFICATION_STATUSES = [
    STATUS_VERIFIED,
    STATUS_PENDING,
    STATUS_NOT_VERIFIED,
    STATUS_BO_INCOMPLETE,
]

# Jurisdiction: origins / nationalities that count as domestic (case-insensitive)
DOMESTIC_JURISDICTION_ALIASES = [
    a.strip().lower()
    for a in os.getenv("DOMESTIC_JURISDICTION_ALIASES", "singapore,singaporean,sg").split(",")
    if a.strip()
]

# Beneficial ownership
BENEFICIAL_OWNERSHIP_THRESHOLD = float(os.getenv("BENEFICIAL_OWNERSHIP_THRESHOLD", "25"))
REGISTER_OF_MEMBERS_CATEGORY = "register_of_members"

# Default requirement set; per-company overrides live in REQUIREMENTS_DIR/<company>.json
DEFAULT_REQUIREMENTS = {
    "singapore_individual_documents": ["nric", "proof_of_address", "email_verification"],
    "foreign_individual_documents": ["passport", "proof_of_address", "email_verification"],
    "singapore_corporate_documents": ["acra_bizfile", "signatory_information"],
    "foreign_corporate_documents": [
        "certificate_of_incorporation",
        "register_of_directors",
        "proof_of_address",
        "signatory_information",
    ],
    "minimum_share_capital": 1500,          # Advisory only, never enforced
    "beneficial_ownership_threshold": BENEFICIAL_OWNERSHIP_THRESHOLD,
}
