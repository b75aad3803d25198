"""Report rendering via Jinja2.

Text templates produce the run summary (stored on the run and printed by
the CLI) and the requirement summary embedded in Judge prompts.  The HTML
template produces a one-page run report for reviewers.
"""

import os
import tempfile
import logging
from datetime import datetime
from pathlib import Path

from jinja2 import ChainableUndefined, Environment, FileSystemLoader, select_autoescape

from kyc_verifier.config import TEMPLATES_DIR, REPORTS_DIR, VERIFICATION_STATUSES
from kyc_verifier.pipeline.models import EntityClassification, RequirementSet

logger = logging.getLogger(__name__)

# HTML is autoescaped, text templates are not.
# ChainableUndefined allows safe nested attribute access (a.b.c) on run
# records loaded back from disk.
_env = Environment(
    loader=FileSystemLoader(str(TEMPLATES_DIR)),
    autoescape=select_autoescape(enabled_extensions=("html",), default=False),
    undefined=ChainableUndefined,
    trim_blocks=True,
    lstrip_blocks=True,
)


def _pct(value) -> str:
    try:
        return f"{float(value):g}%"
    except (TypeError, ValueError):
        return f"{value}%"


_env.filters["pct"] = _pct

STATUS_LABELS = {
    "verified": "Verified",
    "pending": "Pending",
    "notverified": "Not Verified",
    "beneficial_ownership_incomplete": "Beneficial Ownership Incomplete",
}

_SECTION_TITLES = {
    EntityClassification.INDIVIDUAL_DOMESTIC: "INDIVIDUAL DOMESTIC",
    EntityClassification.INDIVIDUAL_FOREIGN: "INDIVIDUAL FOREIGN",
    EntityClassification.CORPORATE_DOMESTIC: "CORPORATE DOMESTIC",
    EntityClassification.CORPORATE_FOREIGN: "CORPORATE FOREIGN",
}


def render_requirements_summary(requirements: RequirementSet) -> str:
    """Human-readable requirement set, one section per classification."""
    sections = [
        {"title": title, "documents": list(requirements.documents.get(classification, ()))}
        for classification, title in _SECTION_TITLES.items()
    ]
    template = _env.get_template("requirements_summary.txt.j2")
    return template.render(
        sections=sections,
        threshold=requirements.beneficial_ownership_threshold,
        ownership_category=requirements.ownership_category,
        minimum_share_capital=requirements.minimum_share_capital,
    ).strip()


def render_run_summary(summary: dict, requirements_summary: str = "") -> str:
    """Text summary of a run from ``RunSummary.to_dict()``."""
    kind = summary.get("entity_kind", "entity")
    template = _env.get_template("run_summary.txt.j2")
    return template.render(
        company=summary.get("company", ""),
        kind=kind,
        kind_label=kind.capitalize(),
        processed=summary.get("processed", 0),
        skipped=summary.get("skipped", []),
        counts=summary.get("counts", {}),
        persist_failures=summary.get("persist_failures", []),
        judge_fallbacks=[
            r.get("entity_id") for r in summary.get("results", []) if r.get("judge_fallback")
        ],
        requirements_summary=requirements_summary,
    ).strip()


def render_html_report(summary: dict, run_id: str = "") -> str:
    template = _env.get_template("run_report.html")
    return template.render(
        summary=summary,
        run_id=run_id or "-",
        statuses=VERIFICATION_STATUSES,
        status_labels=STATUS_LABELS,
        generated_at=datetime.now().strftime("%Y-%m-%d %H:%M"),
    )


def generate_html_report(summary: dict, run_id: str = "") -> Path:
    """Render the HTML run report into REPORTS_DIR and return its path."""
    html = render_html_report(summary, run_id)
    stem = run_id or f"{summary.get('company', 'run')}_{summary.get('entity_kind', 'entity')}"
    safe_stem = "".join(c if c.isalnum() or c in "-_" else "_" for c in stem)
    report_path = REPORTS_DIR / f"{safe_stem}.html"

    fd, tmp_path = tempfile.mkstemp(dir=str(REPORTS_DIR), suffix=".tmp", prefix="rpt_")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp:
            tmp.write(html)
        os.replace(tmp_path, str(report_path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise
    logger.info(f"HTML report written: {report_path}")
    return report_path
