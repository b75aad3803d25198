"""Shared fixtures for the KYC verification test suite."""

import json
import pytest

from kyc_verifier.config import DEFAULT_REQUIREMENTS
from kyc_verifier.pipeline.fact_store import InMemoryFactStore
from kyc_verifier.pipeline.judge import DiscrepancyJudge, JudgeVerdict
from kyc_verifier.pipeline.models import RequirementSet


COMPANY = "Acme Pte Ltd"

DOMESTIC_INDIVIDUAL_DOCS = ["nric", "proof_of_address", "email_verification"]
FOREIGN_INDIVIDUAL_DOCS = ["passport", "proof_of_address", "email_verification"]
DOMESTIC_CORPORATE_DOCS = ["acra_bizfile", "signatory_information", "register_of_members"]
FOREIGN_CORPORATE_DOCS = [
    "certificate_of_incorporation", "register_of_directors", "proof_of_address",
    "signatory_information", "register_of_members",
]


# ═══════════════════════════════════════════════════
# Fact Store row builders (rows shaped like the KYC server's)
# ═══════════════════════════════════════════════════

def _source_column(value, categories: list[str]) -> str:
    """Every document carries the value; a list of values cycles across documents."""
    values = value if isinstance(value, list) else [value]
    return json.dumps([
        {
            "documentId": i + 1,
            "documentName": f"{category}.pdf",
            "value": values[i % len(values)],
            "documentCategory": category,
        }
        for i, category in enumerate(categories)
    ])


def _build_row(entity_id, fields: dict, categories: list[str], **extra) -> dict:
    row = {"id": entity_id}
    for name, value in fields.items():
        if value is None:
            continue
        row[name] = value[0] if isinstance(value, list) else value
        row[f"{name}_source"] = _source_column(value, categories)
    row.update(extra)
    return row


@pytest.fixture
def individual_row():
    """Builder for an individual shareholder row with complete, consistent data."""
    def build(entity_id, name, *, origin="Singapore", nationality="Singaporean", pct=20,
              status=None, categories=None, **overrides):
        domestic = origin.lower() in ("singapore", "sg")
        fields = {
            "full_name": name,
            "id_number": f"S{entity_id:07d}A",
            "id_type": "NRIC" if domestic else "Passport",
            "nationality": nationality,
            "residential_address": f"{entity_id} Raffles Place, Singapore",
            "email_address": f"{name.split()[0].lower()}@example.com",
            "telephone_number": "+65 6000 0000",
            "number_of_shares": "1000",
            "price_per_share": "1.00",
            "percentage_ownership": str(pct),
        }
        fields.update(overrides)
        docs = categories or (DOMESTIC_INDIVIDUAL_DOCS if domestic else FOREIGN_INDIVIDUAL_DOCS)
        return _build_row(
            entity_id, fields, docs,
            shareholder_type="individual", origin=origin, verification_Status=status,
        )
    return build


@pytest.fixture
def corporate_row():
    """Builder for a corporate shareholder row with complete, consistent data."""
    def build(entity_id, name, *, origin="British Virgin Islands", pct=40, owners=None,
              status=None, categories=None, **overrides):
        domestic = origin.lower() in ("singapore", "sg")
        fields = {
            "company_name": name,
            "registration_number": f"BVI-{entity_id:05d}",
            "registered_address": "Road Town, Tortola",
            "signatory_name": "Grace Lee",
            "signatory_email": "grace@example.com",
            "email_address": "info@example.com",
            "telephone_number": "+1 284 000 0000",
            "number_of_shares": "2000",
            "price_per_share": "1.00",
            "percentage_ownership": str(pct),
        }
        fields.update(overrides)
        docs = categories or (DOMESTIC_CORPORATE_DOCS if domestic else FOREIGN_CORPORATE_DOCS)
        return _build_row(
            entity_id, fields, docs,
            shareholder_type="corporate", origin=origin, verification_Status=status,
            beneficial_owners=json.dumps(owners or []),
        )
    return build


@pytest.fixture
def director_row():
    """Builder for a director row with complete, consistent data."""
    def build(entity_id, name, *, nationality="American", status=None, categories=None, **overrides):
        fields = {
            "full_name": name,
            "id_number": f"P{entity_id:08d}",
            "id_type": "Passport",
            "nationality": nationality,
            "residential_address": "500 Fifth Avenue, New York",
            "telephone_number": "+1 212 000 0000",
            "email_address": f"{name.split()[0].lower()}@example.com",
        }
        fields.update(overrides)
        return _build_row(
            entity_id, fields, categories or FOREIGN_INDIVIDUAL_DOCS, verification_Status=status,
        )
    return build


@pytest.fixture
def acme_shareholders(individual_row, corporate_row):
    """Five shareholders covering every status path.

    1 Alice   complete, consistent               -> verified
    2 Bob     nationality "American" vs "USA"    -> verified (variation)
    3 Carol   two different ID numbers           -> notverified
    4 Dave    already notverified                -> skipped
    5 Holdco  40% corporate, Eve owns 80% of it  -> beneficial_ownership_incomplete
    """
    return [
        individual_row(1, "Alice Tan"),
        individual_row(2, "Bob Miller", origin="United States", nationality=["American", "USA"], pct=10),
        individual_row(3, "Carol Lim", pct=10, id_number=["S1234567A", "S7654321B"]),
        individual_row(4, "Dave Ong", status="notverified"),
        corporate_row(5, "Holdco Ltd", pct=40, owners=[{"name": "Eve Wong", "ownership_percentage": 80}]),
    ]


@pytest.fixture
def acme_store(acme_shareholders, director_row):
    return InMemoryFactStore({
        COMPANY: {
            "shareholders": acme_shareholders,
            "directors": [director_row(11, "John Smith")],
        }
    })


@pytest.fixture
def default_requirements():
    return RequirementSet.from_config(DEFAULT_REQUIREMENTS)


# ═══════════════════════════════════════════════════
# Judges
# ═══════════════════════════════════════════════════

class StubJudge(DiscrepancyJudge):
    """Answers from a field -> is_genuine mapping; unmapped fields get no verdict."""

    def __init__(self, verdicts: dict[str, bool] | None = None):
        self.verdicts = verdicts or {}
        self.requests: list[dict] = []

    async def evaluate(self, request: dict) -> list[JudgeVerdict]:
        self.requests.append(request)
        return [
            JudgeVerdict(
                field=d["field"],
                values=tuple(d["values"]),
                is_genuine=self.verdicts[d["field"]],
                explanation="genuine mismatch" if self.verdicts[d["field"]] else "same fact, different format",
            )
            for d in request["discrepancies"]
            if d["field"] in self.verdicts
        ]


@pytest.fixture
def stub_judge():
    return StubJudge({"nationality": False, "id_number": True})
