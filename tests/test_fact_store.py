"""Tests for Fact Store row parsing and the HTTP / in-memory adapters."""

import json
import httpx
import pytest

from kyc_verifier.pipeline.errors import InputError, MalformedResponseError, TransientCollaboratorError
from kyc_verifier.pipeline.fact_store import (
    RECORD_SOURCE_NAME,
    HttpFactStore,
    InMemoryFactStore,
    parse_sources,
    record_from_row,
)
from kyc_verifier.pipeline.models import EntityClassification

COMPANY = "Acme Pte Ltd"


def _store(handler, **kwargs) -> HttpFactStore:
    return HttpFactStore(
        base_url="http://kyc.test", max_retries=3, backoff_base=0,
        transport=httpx.MockTransport(handler), **kwargs,
    )


# ═══════════════════════════════════════════════════
# Row parsing
# ═══════════════════════════════════════════════════

class TestParseSources:

    def test_json_text(self):
        raw = json.dumps([{"documentId": 3, "documentName": "p.pdf", "value": "X", "documentCategory": "passport"}])
        sources = parse_sources(raw)
        assert len(sources) == 1
        assert sources[0].value == "X"
        assert sources[0].document_id == 3
        assert sources[0].document_category == "passport"

    def test_already_decoded_and_snake_case(self):
        sources = parse_sources([{"document_name": "p.pdf", "value": 12, "document_category": "passport"}])
        assert sources[0].value == "12"
        assert sources[0].document_name == "p.pdf"

    def test_single_object(self):
        assert len(parse_sources({"value": "X"})) == 1

    @pytest.mark.parametrize("raw", [None, "", "{broken", 42, "[1, 2]"])
    def test_unusable(self, raw):
        assert parse_sources(raw) == ()

    def test_order_preserved(self):
        sources = parse_sources([{"value": "B"}, {"value": "A"}])
        assert [s.value for s in sources] == ["B", "A"]


class TestRecordFromRow:

    def test_individual_shareholder(self, individual_row):
        record = record_from_row("shareholder", individual_row(1, "Alice Tan", pct=20))
        assert record.id == 1
        assert record.name == "Alice Tan"
        assert record.classification == EntityClassification.INDIVIDUAL_DOMESTIC
        assert record.ownership_percentage == 20
        assert record.primary_value("id_number") == "S0000001A"
        assert record.observed_categories() == ["nric", "proof_of_address", "email_verification"]

    def test_corporate_shareholder(self, corporate_row):
        row = corporate_row(5, "Holdco Ltd", pct=40, owners=[{"name": "Eve Wong", "ownership_percentage": 80}])
        record = record_from_row("shareholder", row)
        assert record.name == "Holdco Ltd"
        assert record.classification == EntityClassification.CORPORATE_FOREIGN
        assert record.is_corporate
        assert record.beneficial_owners_raw == ({"name": "Eve Wong", "ownership_percentage": 80},)
        assert "full_name" not in record.field_sources

    def test_director(self, director_row):
        record = record_from_row("director", director_row(11, "John Smith", nationality="Singaporean"))
        assert record.classification == EntityClassification.INDIVIDUAL_DOMESTIC
        assert record.ownership_percentage is None

    def test_unknown_source_columns_ignored(self, individual_row):
        row = individual_row(1, "Alice Tan")
        row["favourite_colour_source"] = json.dumps([{"value": "red"}, {"value": "blue"}])
        assert "favourite_colour" not in record_from_row("shareholder", row).field_sources

    def test_value_without_sources_gets_record_source(self):
        row = {"id": 7, "shareholder_type": "individual", "origin": "Singapore", "full_name": "Zed"}
        record = record_from_row("shareholder", row)
        assert record.field_sources["full_name"][0].document_name == RECORD_SOURCE_NAME
        assert record.name == "Zed"

    def test_percentage_with_sign(self):
        row = {"id": 7, "shareholder_type": "corporate", "origin": "Singapore", "percentage_ownership": "35 %"}
        assert record_from_row("shareholder", row).ownership_percentage == 35

    def test_unknown_shareholder_type_unclassified(self):
        record = record_from_row("shareholder", {"id": 7, "shareholder_type": "trust"})
        assert record.classification is None

    def test_prior_status_and_stored_discrepancies(self, individual_row):
        row = individual_row(4, "Dave Ong", status="notverified")
        row["discrepancies"] = json.dumps([{"field": "id_number", "values": ["A", "B"]}, "junk"])
        record = record_from_row("shareholder", row)
        assert record.prior_verification_status == "notverified"
        assert record.discrepancies_raw == ({"field": "id_number", "values": ["A", "B"]},)


# ═══════════════════════════════════════════════════
# HttpFactStore
# ═══════════════════════════════════════════════════

class TestHttpFactStore:

    @pytest.mark.asyncio
    async def test_get_entities(self, individual_row):
        seen = []

        def handler(request):
            seen.append(request.url.raw_path.decode())
            return httpx.Response(200, json={"shareholders": [individual_row(1, "Alice Tan")]})

        records = await _store(handler).get_entities(COMPANY, "shareholder")
        assert [r.name for r in records] == ["Alice Tan"]
        assert seen == ["/companies/Acme%20Pte%20Ltd/shareholders"]

    @pytest.mark.asyncio
    async def test_bare_list_payload(self, director_row):
        def handler(request):
            return httpx.Response(200, json=[director_row(11, "John Smith")])

        records = await _store(handler).get_entities(COMPANY, "director")
        assert records[0].kind == "director"

    @pytest.mark.asyncio
    async def test_not_found_is_empty(self):
        records = await _store(lambda r: httpx.Response(404)).get_entities(COMPANY, "director")
        assert records == []

    @pytest.mark.asyncio
    async def test_client_error_is_malformed(self):
        with pytest.raises(MalformedResponseError):
            await _store(lambda r: httpx.Response(400, text="bad")).get_entities(COMPANY, "director")

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        with pytest.raises(MalformedResponseError):
            await _store(lambda r: httpx.Response(200, text="<html>")).get_entities(COMPANY, "director")

    @pytest.mark.asyncio
    async def test_missing_list(self):
        handler = lambda r: httpx.Response(200, json={"directors": "none"})
        with pytest.raises(MalformedResponseError):
            await _store(handler).get_entities(COMPANY, "director")

    @pytest.mark.asyncio
    async def test_retries_server_errors(self):
        calls = []

        def handler(request):
            calls.append(1)
            if len(calls) < 3:
                return httpx.Response(503)
            return httpx.Response(200, json={"directors": []})

        assert await _store(handler).get_entities(COMPANY, "director") == []
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_exhausted_retries_raise_transient(self):
        def handler(request):
            raise httpx.ConnectError("refused")

        with pytest.raises(TransientCollaboratorError) as exc_info:
            await _store(handler).get_entities(COMPANY, "director")
        assert exc_info.value.collaborator == "fact_store"
        assert exc_info.value.attempts == 3

    @pytest.mark.asyncio
    async def test_unknown_kind(self):
        with pytest.raises(InputError):
            await _store(lambda r: httpx.Response(200, json=[])).get_entities(COMPANY, "auditor")

    @pytest.mark.asyncio
    async def test_update_verification(self):
        seen = []

        def handler(request):
            seen.append((request.method, request.url.path, json.loads(request.content)))
            return httpx.Response(200, json={"ok": True})

        await _store(handler).update_verification("shareholder", 5, "pending", '{"status": "x"}')
        assert seen == [(
            "PATCH", "/shareholders/5/verification",
            {"verification_Status": "pending", "KYC_Status": '{"status": "x"}'},
        )]

    @pytest.mark.asyncio
    async def test_update_verification_rejected(self):
        with pytest.raises(MalformedResponseError):
            await _store(lambda r: httpx.Response(404)).update_verification("director", 99, "verified", None)

    @pytest.mark.asyncio
    async def test_undecodable_reply_is_malformed_without_retry(self):
        calls = []

        def handler(request):
            calls.append(1)
            return httpx.Response(200, headers={"Content-Encoding": "gzip"}, content=b"not gzip")

        with pytest.raises(MalformedResponseError) as exc_info:
            await _store(handler).update_verification("shareholder", 1, "verified", None)
        assert "DecodingError" in str(exc_info.value)
        assert len(calls) == 1


# ═══════════════════════════════════════════════════
# InMemoryFactStore
# ═══════════════════════════════════════════════════

class TestInMemoryFactStore:

    @pytest.mark.asyncio
    async def test_snapshot_isolated_from_writes(self, acme_store):
        before = await acme_store.get_entities(COMPANY, "shareholder")
        await acme_store.update_verification("shareholder", 1, "verified", None)
        assert before[0].prior_verification_status is None
        after = await acme_store.get_entities(COMPANY, "shareholder")
        assert after[0].prior_verification_status == "verified"
        assert acme_store.updates == [("shareholder", 1, "verified", None)]

    @pytest.mark.asyncio
    async def test_unknown_company(self, acme_store):
        assert await acme_store.get_entities("Nobody Ltd", "director") == []

    @pytest.mark.asyncio
    async def test_unknown_id(self, acme_store):
        with pytest.raises(InputError):
            await acme_store.update_verification("director", 999, "verified", None)

    @pytest.mark.asyncio
    async def test_add_row_and_from_json_file(self, tmp_path, director_row):
        store = InMemoryFactStore()
        store.add_row(COMPANY, "director", director_row(11, "John Smith"))
        path = tmp_path / "export.json"
        path.write_text(json.dumps(store.companies), encoding="utf-8")

        loaded = InMemoryFactStore.from_json_file(path)
        records = await loaded.get_entities(COMPANY, "director")
        assert [r.name for r in records] == ["John Smith"]

    def test_from_json_file_rejects_list(self, tmp_path):
        path = tmp_path / "export.json"
        path.write_text("[]", encoding="utf-8")
        with pytest.raises(InputError):
            InMemoryFactStore.from_json_file(path)
