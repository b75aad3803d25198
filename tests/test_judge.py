"""Tests for the Discrepancy Judge adapter.

Tests cover:
  - build_judge_request: entity context and source reduction
  - parse_judge_response: shape validation
  - classify_discrepancies: verdict matching, uncovered discrepancies
  - judge_discrepancies: fail-closed behavior
  - LLMDiscrepancyJudge: call_llm wiring
"""

import pytest
from unittest.mock import AsyncMock, patch

from kyc_verifier.pipeline.errors import MalformedResponseError, TransientCollaboratorError
from kyc_verifier.pipeline.judge import (
    JUDGE_UNAVAILABLE,
    NOT_EVALUATED,
    DiscrepancyJudge,
    JudgeVerdict,
    LLMDiscrepancyJudge,
    build_judge_request,
    classify_discrepancies,
    judge_discrepancies,
    parse_judge_response,
)
from kyc_verifier.pipeline.models import Discrepancy, EntityClassification, EntityRecord, SourcedValue
from kyc_verifier.pipeline.schemas import JUDGE_SCHEMA


def _src(value, category):
    return SourcedValue(value=value, document_id=1, document_name=f"{category}.pdf", document_category=category)


NATIONALITY = Discrepancy(
    field="nationality",
    distinct_values=("American", "USA"),
    sources={"American": (_src("American", "passport"),), "USA": (_src("USA", "proof_of_address"),)},
)
ID_NUMBER = Discrepancy(field="id_number", distinct_values=("P1", "P2"))


def _shareholder():
    return EntityRecord(
        id=2, kind="shareholder", name="Bob Miller",
        classification=EntityClassification.INDIVIDUAL_FOREIGN,
        field_sources={"nationality": NATIONALITY.sources["American"] + NATIONALITY.sources["USA"]},
        attributes={"shareholder_type": "individual", "origin": "United States"},
    )


class _RaisingJudge(DiscrepancyJudge):
    def __init__(self, exc):
        self.exc = exc

    async def evaluate(self, request):
        raise self.exc


class _FixedJudge(DiscrepancyJudge):
    def __init__(self, verdicts):
        self.verdicts = verdicts
        self.calls = 0

    async def evaluate(self, request):
        self.calls += 1
        return self.verdicts


# ═══════════════════════════════════════════════════
# build_judge_request
# ═══════════════════════════════════════════════════

class TestBuildJudgeRequest:

    def test_shareholder_request(self):
        request = build_judge_request(_shareholder(), [NATIONALITY], "INDIVIDUAL FOREIGN: passport")
        assert request["entity_name"] == "Bob Miller"
        assert request["entity_type"] == "individual shareholder"
        assert request["origin"] == "United States"
        assert request["requirements_summary"] == "INDIVIDUAL FOREIGN: passport"
        assert request["source_document_categories"] == ["passport", "proof_of_address"]
        item = request["discrepancies"][0]
        assert item["field"] == "nationality"
        assert item["values"] == ["American", "USA"]
        assert item["sources"]["USA"] == [
            {"document_name": "proof_of_address.pdf", "document_category": "proof_of_address"}
        ]

    def test_director_origin_is_nationality(self):
        record = EntityRecord(
            id=11, kind="director", name="John Smith",
            classification=EntityClassification.INDIVIDUAL_FOREIGN,
            field_sources={"nationality": (_src("American", "passport"),)},
        )
        request = build_judge_request(record, [NATIONALITY])
        assert request["entity_type"] == "director"
        assert request["origin"] == "American"

    def test_unknown_entity_context(self):
        record = EntityRecord(id=3, kind="shareholder", name="", classification=None)
        request = build_judge_request(record, [ID_NUMBER])
        assert request["entity_name"] == "Unknown"
        assert request["origin"] == "Unknown"
        assert request["entity_type"] == "unknown shareholder"


# ═══════════════════════════════════════════════════
# parse_judge_response
# ═══════════════════════════════════════════════════

class TestParseJudgeResponse:

    def test_valid_response(self):
        verdicts = parse_judge_response({"evaluated_discrepancies": [
            {"field": "nationality", "values": ["American", "USA"],
             "is_genuine_discrepancy": False, "explanation": "same country"},
        ]})
        assert verdicts == [JudgeVerdict("nationality", ("American", "USA"), False, "same country")]

    @pytest.mark.parametrize("raw", [None, [], {}, {"evaluated_discrepancies": "none"}])
    def test_missing_list_raises(self, raw):
        with pytest.raises(MalformedResponseError):
            parse_judge_response(raw)

    def test_malformed_items_dropped(self):
        verdicts = parse_judge_response({"evaluated_discrepancies": [
            "nationality",
            {"field": "nationality", "is_genuine_discrepancy": "no"},
            {"is_genuine_discrepancy": True},
            {"field": "id_number", "is_genuine_discrepancy": True},
        ]})
        assert [v.field for v in verdicts] == ["id_number"]
        assert verdicts[0].values == ()
        assert verdicts[0].explanation == ""


# ═══════════════════════════════════════════════════
# classify_discrepancies
# ═══════════════════════════════════════════════════

class TestClassifyDiscrepancies:

    def test_split_by_verdict(self):
        outcome = classify_discrepancies([NATIONALITY, ID_NUMBER], [
            JudgeVerdict("nationality", (), False, "same country"),
            JudgeVerdict("id_number", (), True, "different documents"),
        ])
        assert [r.field for r in outcome.resolved] == ["nationality"]
        assert outcome.resolved[0].resolution == "same country"
        assert [g.field for g in outcome.genuine] == ["id_number"]
        assert not outcome.fallback

    def test_values_come_from_detection(self):
        outcome = classify_discrepancies([NATIONALITY], [
            JudgeVerdict("nationality", ("something", "else"), False, "same"),
        ])
        assert outcome.resolved[0].values == ("American", "USA")

    def test_uncovered_discrepancy_is_genuine(self):
        outcome = classify_discrepancies([NATIONALITY, ID_NUMBER], [
            JudgeVerdict("nationality", (), False, "same country"),
        ])
        assert [(g.field, g.explanation) for g in outcome.genuine] == [("id_number", NOT_EVALUATED)]

    def test_first_verdict_per_field_wins(self):
        outcome = classify_discrepancies([NATIONALITY], [
            JudgeVerdict("nationality", (), True, "first"),
            JudgeVerdict("nationality", (), False, "second"),
        ])
        assert outcome.genuine[0].explanation == "first"

    def test_unknown_fields_ignored(self):
        outcome = classify_discrepancies([NATIONALITY], [
            JudgeVerdict("favourite_colour", (), False, "irrelevant"),
            JudgeVerdict("nationality", (), False, "same country"),
        ])
        assert len(outcome.resolved) == 1
        assert outcome.genuine == []


# ═══════════════════════════════════════════════════
# judge_discrepancies
# ═══════════════════════════════════════════════════

class TestJudgeDiscrepancies:

    @pytest.mark.asyncio
    async def test_no_discrepancies_skips_judge(self):
        judge = _FixedJudge([])
        outcome = await judge_discrepancies(judge, _shareholder(), [])
        assert judge.calls == 0
        assert outcome.genuine == [] and outcome.resolved == []

    @pytest.mark.asyncio
    async def test_verdicts_applied(self):
        judge = _FixedJudge([JudgeVerdict("nationality", (), False, "same country")])
        outcome = await judge_discrepancies(judge, _shareholder(), [NATIONALITY])
        assert [r.field for r in outcome.resolved] == ["nationality"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("exc", [
        TransientCollaboratorError("llm", "timed out", attempts=3),
        MalformedResponseError("judge", "response has no evaluated_discrepancies list"),
    ])
    async def test_fail_closed(self, exc):
        outcome = await judge_discrepancies(_RaisingJudge(exc), _shareholder(), [NATIONALITY, ID_NUMBER])
        assert outcome.fallback
        assert outcome.resolved == []
        assert [g.field for g in outcome.genuine] == ["nationality", "id_number"]
        assert outcome.genuine[0].explanation.startswith(JUDGE_UNAVAILABLE)

    @pytest.mark.asyncio
    async def test_unexpected_exception_fails_closed(self):
        outcome = await judge_discrepancies(_RaisingJudge(RuntimeError("bug")), _shareholder(), [NATIONALITY])
        assert outcome.fallback
        assert outcome.error == "RuntimeError: bug"
        assert [g.field for g in outcome.genuine] == ["nationality"]
        assert outcome.genuine[0].explanation == f"{JUDGE_UNAVAILABLE}: RuntimeError: bug"


# ═══════════════════════════════════════════════════
# LLMDiscrepancyJudge
# ═══════════════════════════════════════════════════

class TestLLMDiscrepancyJudge:

    def test_default_prompt_loaded(self):
        judge = LLMDiscrepancyJudge()
        assert "evaluated_discrepancies" in judge.system_prompt

    @pytest.mark.asyncio
    async def test_calls_llm_with_schema(self):
        mock = AsyncMock(return_value={"evaluated_discrepancies": [
            {"field": "nationality", "values": ["American", "USA"],
             "is_genuine_discrepancy": False, "explanation": "same country"},
        ]})
        with patch("kyc_verifier.pipeline.judge.call_llm", mock):
            judge = LLMDiscrepancyJudge(system_prompt="judge")
            request = build_judge_request(_shareholder(), [NATIONALITY])
            verdicts = await judge.evaluate(request)

        assert verdicts[0].is_genuine is False
        kwargs = mock.call_args.kwargs
        assert kwargs["expect_json"] is JUDGE_SCHEMA
        assert kwargs["system_prompt"] == "judge"
        assert kwargs["temperature"] == 0.0
        assert "Bob Miller" in kwargs["prompt"]
        assert "nationality" in kwargs["prompt"]

    @pytest.mark.asyncio
    async def test_malformed_llm_output_raises(self):
        with patch("kyc_verifier.pipeline.judge.call_llm", AsyncMock(return_value={"verdicts": []})):
            judge = LLMDiscrepancyJudge(system_prompt="judge")
            with pytest.raises(MalformedResponseError):
                await judge.evaluate(build_judge_request(_shareholder(), [NATIONALITY]))
