"""Fact Store adapters: read entity snapshots, write back verification status.

The KYC server stores one row per director / shareholder.  Every field has
a value column and a ``<field>_source`` column holding a JSON array of
``{documentId, documentName, value, documentCategory}`` objects in
document processing order.  ``record_from_row`` turns such a row into an
immutable ``EntityRecord``; everything downstream works on records only.

Two implementations:
  - ``HttpFactStore``: the KYC server REST API (httpx, retry + backoff)
  - ``InMemoryFactStore``: rows held in memory (tests, offline runs from
    a JSON export)
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
from typing import Any, Iterable
from urllib.parse import quote

import httpx

from kyc_verifier.config import (
    DOMESTIC_JURISDICTION_ALIASES, ENTITY_KINDS, FACT_STORE_BACKOFF_BASE,
    FACT_STORE_MAX_RETRIES, FACT_STORE_TIMEOUT, FACT_STORE_URL,
)
from kyc_verifier.pipeline.errors import InputError, MalformedResponseError, TransientCollaboratorError
from kyc_verifier.pipeline.fields import fields_for, name_field_for
from kyc_verifier.pipeline.models import EntityRecord, SourcedValue
from kyc_verifier.pipeline.requirements import classify_entity

logger = logging.getLogger(__name__)

# Value used as document name when a column holds a value but no sources
RECORD_SOURCE_NAME = "record"


# ═══════════════════════════════════════════════════
# ROW PARSING
# ═══════════════════════════════════════════════════

def _load_json_column(raw: Any, default: Any) -> Any:
    """JSON columns arrive either already decoded or as TEXT."""
    if raw is None or raw == "":
        return default
    if isinstance(raw, (list, dict)):
        return raw
    if isinstance(raw, str):
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"Fact Store: unparseable JSON column ({raw[:80]!r})")
            return default
    return default


def parse_sources(raw: Any) -> tuple[SourcedValue, ...]:
    """Decode a ``<field>_source`` column into ordered SourcedValues."""
    decoded = _load_json_column(raw, [])
    if isinstance(decoded, dict):
        decoded = [decoded]
    if not isinstance(decoded, list):
        return ()
    return tuple(SourcedValue.from_dict(item) for item in decoded if isinstance(item, dict))


def _parse_percentage(raw: Any) -> float | None:
    if raw is None:
        return None
    text = str(raw).strip().rstrip("%").strip()
    if not text:
        return None
    try:
        return float(text)
    except ValueError:
        return None


def record_from_row(
    kind: str,
    row: dict,
    domestic_aliases: Iterable[str] = DOMESTIC_JURISDICTION_ALIASES,
) -> EntityRecord:
    """Build an EntityRecord from one Fact Store row.

    Only the fixed field set for the entity type is read; unknown
    ``*_source`` columns are ignored.
    """
    shareholder_type = row.get("shareholder_type")
    is_corporate = kind == "shareholder" and str(shareholder_type or "").strip().lower() == "corporate"

    field_sources: dict[str, tuple[SourcedValue, ...]] = {}
    for name in fields_for(kind, is_corporate):
        sources = parse_sources(row.get(f"{name}_source"))
        if not sources and row.get(name) not in (None, ""):
            sources = (SourcedValue(value=str(row[name]), document_name=RECORD_SOURCE_NAME),)
        if sources:
            field_sources[name] = sources

    def primary(name: str) -> Any:
        srcs = field_sources.get(name)
        if srcs and srcs[0].value:
            return srcs[0].value
        return row.get(name)

    attributes = {
        "shareholder_type": shareholder_type or primary("shareholder_type"),
        "origin": row.get("origin") or primary("origin"),
        "nationality": primary("nationality"),
    }
    name_field = name_field_for(kind, is_corporate)
    name = primary(name_field) or row.get("name") or ""

    ownership = None
    if kind == "shareholder":
        ownership = _parse_percentage(row.get("percentage_ownership"))
        if ownership is None:
            ownership = _parse_percentage(primary("percentage_ownership"))

    discrepancies_raw = _load_json_column(row.get("discrepancies"), [])
    beneficial_owners_raw = _load_json_column(row.get("beneficial_owners"), [])

    return EntityRecord(
        id=row.get("id"),
        kind=kind,
        name=str(name),
        classification=classify_entity(kind, attributes, list(domestic_aliases)),
        field_sources=field_sources,
        attributes=attributes,
        discrepancies_raw=tuple(d for d in discrepancies_raw if isinstance(d, dict))
        if isinstance(discrepancies_raw, list) else (),
        beneficial_owners_raw=tuple(o for o in beneficial_owners_raw if isinstance(o, dict))
        if isinstance(beneficial_owners_raw, list) else (),
        ownership_percentage=ownership,
        prior_verification_status=row.get("verification_Status", row.get("verification_status")),
    )


def _check_kind(kind: str):
    if kind not in ENTITY_KINDS:
        raise InputError(f"unknown entity kind {kind!r} (expected one of {ENTITY_KINDS})")


# ═══════════════════════════════════════════════════
# STORES
# ═══════════════════════════════════════════════════

class FactStore:
    """Interface consumed by the orchestrator."""

    async def get_entities(self, company: str, kind: str) -> list[EntityRecord]:
        raise NotImplementedError

    async def update_verification(
        self, kind: str, entity_id: Any, status: str, kyc_status_detail: str | None,
    ) -> None:
        raise NotImplementedError


class HttpFactStore(FactStore):
    """KYC server REST API.

    GET   /companies/{company}/{kind}s      -> {"{kind}s": [row, ...]}
    PATCH /{kind}s/{id}/verification        <- {verification_Status, KYC_Status}
    """

    def __init__(
        self,
        base_url: str = FACT_STORE_URL,
        timeout: float = FACT_STORE_TIMEOUT,
        max_retries: int = FACT_STORE_MAX_RETRIES,
        backoff_base: float = FACT_STORE_BACKOFF_BASE,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.backoff_base = backoff_base
        self._transport = transport

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        last_error: Exception | None = None
        for attempt in range(self.max_retries):
            if attempt > 0:
                backoff = self.backoff_base * (2 ** attempt) + random.uniform(0, self.backoff_base)
                await asyncio.sleep(backoff)
            try:
                async with httpx.AsyncClient(
                    base_url=self.base_url, timeout=self.timeout, transport=self._transport,
                ) as client:
                    response = await client.request(method, path, **kwargs)
                if response.status_code >= 500 or response.status_code == 429:
                    last_error = httpx.HTTPStatusError(
                        f"{response.status_code} from {method} {path}",
                        request=response.request, response=response,
                    )
                    logger.warning(
                        f"Fact Store {method} {path}: HTTP {response.status_code} "
                        f"(attempt {attempt + 1}/{self.max_retries})"
                    )
                    continue
                return response
            except httpx.TransportError as e:
                last_error = e
                logger.warning(f"Fact Store {method} {path}: {e!r} (attempt {attempt + 1}/{self.max_retries})")
            except httpx.HTTPError as e:
                # Undecodable body, redirect loop: the server answered, retrying will not help
                logger.error(f"Fact Store {method} {path}: {e!r}")
                raise MalformedResponseError("fact_store", f"{method} {path}: {type(e).__name__}: {e}")

        logger.error(f"Fact Store {method} {path} failed after {self.max_retries} attempts: {last_error}")
        raise TransientCollaboratorError(
            "fact_store", f"{method} {path} failed: {last_error}", attempts=self.max_retries,
        )

    async def get_entities(self, company: str, kind: str) -> list[EntityRecord]:
        _check_kind(kind)
        path = f"/companies/{quote(company, safe='')}/{kind}s"
        response = await self._request("GET", path)
        if response.status_code == 404:
            logger.info(f"Fact Store: no {kind}s for {company} (404)")
            return []
        if response.status_code >= 400:
            raise MalformedResponseError(
                "fact_store", f"GET {path} returned HTTP {response.status_code}", raw=response.text[:2000],
            )
        try:
            payload = response.json()
        except json.JSONDecodeError as e:
            raise MalformedResponseError("fact_store", f"GET {path}: invalid JSON ({e})", raw=response.text[:2000])

        rows = payload.get(f"{kind}s") if isinstance(payload, dict) else payload
        if not isinstance(rows, list):
            raise MalformedResponseError("fact_store", f"GET {path}: no {kind}s list", raw=response.text[:2000])
        records = [record_from_row(kind, row) for row in rows if isinstance(row, dict)]
        logger.info(f"Fact Store: {len(records)} {kind}(s) for {company}")
        return records

    async def update_verification(
        self, kind: str, entity_id: Any, status: str, kyc_status_detail: str | None,
    ) -> None:
        _check_kind(kind)
        path = f"/{kind}s/{quote(str(entity_id), safe='')}/verification"
        response = await self._request(
            "PATCH", path, json={"verification_Status": status, "KYC_Status": kyc_status_detail},
        )
        if response.status_code >= 400:
            raise MalformedResponseError(
                "fact_store", f"PATCH {path} returned HTTP {response.status_code}", raw=response.text[:2000],
            )


class InMemoryFactStore(FactStore):
    """Rows kept in a dict: ``{company: {"directors": [...], "shareholders": [...]}}``.

    Writes update the stored rows in place, so a second run sees the
    statuses written by the first.
    """

    def __init__(self, companies: dict[str, dict[str, list[dict]]] | None = None):
        self.companies = companies or {}
        self.updates: list[tuple[str, Any, str, str | None]] = []

    @classmethod
    def from_json_file(cls, path) -> "InMemoryFactStore":
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise InputError(f"{path}: expected an object keyed by company name")
        return cls(data)

    def add_row(self, company: str, kind: str, row: dict):
        _check_kind(kind)
        self.companies.setdefault(company, {}).setdefault(f"{kind}s", []).append(row)

    def _rows(self, kind: str) -> Iterable[dict]:
        for entities in self.companies.values():
            yield from entities.get(f"{kind}s", [])

    async def get_entities(self, company: str, kind: str) -> list[EntityRecord]:
        _check_kind(kind)
        rows = self.companies.get(company, {}).get(f"{kind}s", [])
        # Snapshot: later writes must not leak into records already handed out
        return [record_from_row(kind, json.loads(json.dumps(row))) for row in rows]

    async def update_verification(
        self, kind: str, entity_id: Any, status: str, kyc_status_detail: str | None,
    ) -> None:
        _check_kind(kind)
        for row in self._rows(kind):
            if row.get("id") == entity_id:
                row["verification_Status"] = status
                row["KYC_Status"] = kyc_status_detail
                self.updates.append((kind, entity_id, status, kyc_status_detail))
                return
        raise InputError(f"no {kind} with id {entity_id!r}")
