#!/usr/bin/env python3
"""CLI tool to run a KYC verification for one company.

Usage:
    python run_verification.py <company>                          # Verify shareholders
    python run_verification.py <company> --kind director          # Verify directors
    python run_verification.py <company> --trace                  # Run with KYC_TRACE
    python run_verification.py <company> --json                   # Output raw JSON
    python run_verification.py <company> --include-notverified    # Re-evaluate notverified entities
    python run_verification.py <company> --retrigger 12 --retrigger 15
    python run_verification.py <company> --fixtures export.json   # Offline, from a JSON export
    python run_verification.py <company> --requirements           # Print the requirement set

Examples:
    python run_verification.py "Acme Pte Ltd"
    python run_verification.py "Acme Pte Ltd" --kind director --html
"""

import argparse
import asyncio
import json
import os
import sys
from pathlib import Path

# Ensure the kyc_verifier package is importable
sys.path.insert(0, str(Path(__file__).resolve().parent))

_STATUS_ICONS = {
    "verified": "✓",
    "pending": "…",
    "notverified": "✗",
    "beneficial_ownership_incomplete": "⚠",
}


def print_requirements(company: str):
    from kyc_verifier.pipeline.requirements import load_requirements
    from kyc_verifier.reports.generator import render_requirements_summary

    print(render_requirements_summary(load_requirements(company)))


def print_summary(summary: dict):
    """Pretty print one run summary."""
    results = summary.get("results", [])
    print(f"\n{'═' * 70}")
    print(f"  KYC Verification: {summary['company']} ({summary['entity_kind']}s)")
    print(f"{'═' * 70}\n")

    for r in results:
        icon = _STATUS_ICONS.get(r["status"], "?")
        print(f"  {icon} {r['name'] or r['entity_id']}  [{r['classification'] or 'unclassified'}]  {r['status']}")
        details = r.get("details", {})
        for d in details.get("genuine_discrepancies", []):
            print(f"      discrepancy {d['field']}: {' / '.join(d['values'])}")
            print(f"        {d['explanation'][:120]}")
        if details.get("missing_fields"):
            print(f"      missing fields: {', '.join(details['missing_fields'])}")
        if details.get("missing_documents"):
            print(f"      missing documents: {', '.join(details['missing_documents'])}")
        for issue in details.get("beneficial_ownership_issues", []):
            print(f"      beneficial owner {issue['owner_name']}: {issue['description']}")
        if r.get("judge_fallback"):
            print("      (discrepancy judge unavailable, discrepancies treated as genuine)")
    if not results:
        print("  Nothing evaluated.")

    print()
    print(summary.get("summary", ""))
    print()


async def run(args) -> dict:
    from kyc_verifier.pipeline.fact_store import HttpFactStore, InMemoryFactStore
    from kyc_verifier.pipeline.judge import LLMDiscrepancyJudge
    from kyc_verifier.pipeline.orchestrator import run_verification

    store = InMemoryFactStore.from_json_file(args.fixtures) if args.fixtures else HttpFactStore()
    summary = await run_verification(
        args.company,
        args.kind,
        store=store,
        judge=LLMDiscrepancyJudge(),
        include_notverified=args.include_notverified,
        retrigger_ids=args.retrigger,
    )
    return summary.to_dict()


def main():
    parser = argparse.ArgumentParser(
        description="KYC CLI: verify directors or shareholders of a company",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("company", help="Company name as stored in the Fact Store")
    parser.add_argument("--kind", choices=["director", "shareholder"], default="shareholder")
    parser.add_argument("--trace", action="store_true", help="Enable KYC_TRACE debug output")
    parser.add_argument("--json", action="store_true", help="Output raw JSON instead of pretty print")
    parser.add_argument("--include-notverified", action="store_true",
                        help="Re-evaluate entities already marked notverified")
    parser.add_argument("--retrigger", action="append", default=[], metavar="ID",
                        help="Re-evaluate one notverified entity by id (repeatable)")
    parser.add_argument("--fixtures", metavar="FILE",
                        help="Read entities from a JSON export instead of the KYC server")
    parser.add_argument("--html", action="store_true", help="Also write an HTML report")
    parser.add_argument("--requirements", action="store_true",
                        help="Print the effective requirement set and exit")

    args = parser.parse_args()

    # Must be set before kyc_verifier.config is first imported
    if args.trace:
        os.environ["KYC_TRACE"] = "1"

    import logging
    if args.trace:
        logging.basicConfig(level=logging.DEBUG, format="%(message)s")
    else:
        logging.basicConfig(level=logging.WARNING)

    if args.requirements:
        print_requirements(args.company)
        return

    from kyc_verifier.pipeline.errors import KYCVerificationError

    try:
        summary = asyncio.run(run(args))
    except KYCVerificationError as e:
        print(f"Verification failed: {e}", file=sys.stderr)
        sys.exit(1)

    if args.html:
        from kyc_verifier.reports.generator import generate_html_report
        path = generate_html_report(summary)
        print(f"HTML report: {path}", file=sys.stderr)

    if args.json:
        print(json.dumps(summary, indent=2, default=str, ensure_ascii=False))
        return
    print_summary(summary)


if __name__ == "__main__":
    main()
