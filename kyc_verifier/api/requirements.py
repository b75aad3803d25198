"""Requirement configuration endpoints."""

import logging
from fastapi import APIRouter

from kyc_verifier.pipeline.requirements import load_requirements
from kyc_verifier.reports.generator import render_requirements_summary

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/{company}")
async def get_requirements(company: str):
    """Effective requirement set for a company (defaults merged with overrides)."""
    requirements = load_requirements(company)
    return {
        "company": company,
        "requirements": requirements.to_dict(),
        "summary": render_requirements_summary(requirements),
    }
