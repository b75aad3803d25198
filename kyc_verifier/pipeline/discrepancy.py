"""Discrepancy detector: finds fields whose sources disagree.

Comparison is exact string equality.  "USA" vs "American" IS a
discrepancy here; deciding whether it is a genuine one is the
Discrepancy Judge's job, never this module's.
"""

import logging
from typing import Iterable, Mapping, Sequence

from kyc_verifier.config import TRACE_ENABLED
from kyc_verifier.pipeline.models import Discrepancy, EntityRecord, SourcedValue
from kyc_verifier.pipeline.fields import fields_for

logger = logging.getLogger(__name__)


def _trace(msg: str):
    if TRACE_ENABLED:
        logger.debug(f"[TRACE] {msg}")


def detect_field_discrepancy(field: str, sources: Sequence[SourcedValue]) -> Discrepancy | None:
    """Return a Discrepancy if ``sources`` hold more than one distinct value."""
    grouped: dict[str, list[SourcedValue]] = {}
    for s in sources:
        if s.value is None or s.value == "":
            continue
        grouped.setdefault(s.value, []).append(s)
    if len(grouped) <= 1:
        return None
    return Discrepancy(
        field=field,
        distinct_values=tuple(grouped),
        sources={value: tuple(srcs) for value, srcs in grouped.items()},
    )


def detect_discrepancies(
    field_sources: Mapping[str, Sequence[SourcedValue]],
    fields: Iterable[str],
) -> list[Discrepancy]:
    """Detect discrepancies for the given fields, in field order."""
    discrepancies = []
    for field in fields:
        found = detect_field_discrepancy(field, field_sources.get(field) or ())
        if found is not None:
            _trace(f"DISCREPANCY {field}: {list(found.distinct_values)}")
            discrepancies.append(found)
    return discrepancies


def _legacy_discrepancies(record: EntityRecord, fields: Sequence[str]) -> list[Discrepancy]:
    """Stored upstream discrepancies for fields that carry no sources at all."""
    legacy = []
    for raw in record.discrepancies_raw:
        if not isinstance(raw, dict):
            continue
        field = raw.get("field")
        if field not in fields or record.field_sources.get(field):
            continue
        values = tuple(dict.fromkeys(str(v) for v in raw.get("values", []) if v not in (None, "")))
        if len(values) > 1:
            legacy.append(Discrepancy(field=field, distinct_values=values))
    return legacy


def detect_entity_discrepancies(record: EntityRecord) -> list[Discrepancy]:
    """Discrepancies for one entity, restricted to its type's field set."""
    fields = fields_for(record.kind, record.is_corporate)
    discrepancies = detect_discrepancies(record.field_sources, fields)
    legacy = _legacy_discrepancies(record, fields)
    if legacy:
        logger.info(
            f"Entity {record.id}: {len(legacy)} stored discrepancy(ies) kept for fields without sources"
        )
        discrepancies.extend(legacy)
    return discrepancies
