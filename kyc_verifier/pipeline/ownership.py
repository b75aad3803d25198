"""Beneficial ownership resolver: effective ownership through corporate chains.

The graph is a set of directed edges ``owner --pct--> owned``.  Starting
from a target company, every corporate shareholder at or above the
threshold is walked upward through its own shareholders; each hop scales
the running percentage by ``pct / 100``.  Individuals whose effective
stake in the target meets the threshold must be identified and KYC'd.

Usage in the pipeline::

    graph = build_ownership_graph("Acme Pte Ltd", shareholders)
    resolution = resolve_beneficial_owners(graph, "Acme Pte Ltd", threshold=25, via="Holdco Ltd")
    issues = ownership_issues(resolution, shareholder_record, threshold=25)

Architecture notes:
  - Products of percentages in [0, 100] only shrink, so a branch whose
    running percentage is already below threshold is pruned.
  - Cycles are detected over the whole ancestor subgraph, independently
    of the threshold, and reported as ``DataIntegrityError`` entries on
    the resolution.  The walk itself never revisits a node on its path.
  - An individual reachable through several paths keeps the maximum
    effective percentage and lists every distinct path.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from kyc_verifier.config import BENEFICIAL_OWNERSHIP_THRESHOLD, TRACE_ENABLED
from kyc_verifier.pipeline.errors import DataIntegrityError
from kyc_verifier.pipeline.models import BeneficialOwner, EntityRecord, OwnershipEdge, OwnershipIssue

logger = logging.getLogger(__name__)

INDIVIDUAL = "individual"
CORPORATE = "corporate"

# Percentages are compared after rounding so 24.9999999 from float
# products does not fall below a 25% threshold.
_PCT_PRECISION = 9


def _trace(msg: str):
    if TRACE_ENABLED:
        logger.debug(f"[TRACE] {msg}")


def _fmt_pct(value: float) -> str:
    return f"{value:g}%"


# ═══════════════════════════════════════════════════
# GRAPH
# ═══════════════════════════════════════════════════

class OwnershipGraph:
    """Directed ownership edges indexed by the owned entity."""

    def __init__(self):
        self._owners: dict[str, list[OwnershipEdge]] = {}
        self._kinds: dict[str, str] = {}

    def add_node(self, node_id: str, kind: str | None = None):
        if kind:
            # A node seen as corporate anywhere stays corporate
            if self._kinds.get(node_id) != CORPORATE:
                self._kinds[node_id] = kind
        else:
            self._kinds.setdefault(node_id, "")

    def add_edge(self, owner_id: str, owned_id: str, percentage: float,
                 owner_kind: str | None = None) -> OwnershipEdge:
        pct = float(percentage)
        if not 0 <= pct <= 100:
            raise DataIntegrityError(
                f"ownership percentage {pct} for {owner_id} -> {owned_id} is outside [0, 100]"
            )
        edge = OwnershipEdge(owner_id=owner_id, owned_id=owned_id, percentage=pct)
        self.add_node(owner_id, owner_kind)
        self.add_node(owned_id, CORPORATE)
        edges = self._owners.setdefault(owned_id, [])
        if edge not in edges:
            edges.append(edge)
        return edge

    def owners_of(self, owned_id: str) -> list[OwnershipEdge]:
        return list(self._owners.get(owned_id, ()))

    def is_corporate(self, node_id: str) -> bool:
        kind = self._kinds.get(node_id)
        if kind:
            return kind == CORPORATE
        return bool(self._owners.get(node_id))

    @property
    def edges(self) -> list[OwnershipEdge]:
        return [e for edges in self._owners.values() for e in edges]

    def __contains__(self, node_id: str) -> bool:
        return node_id in self._kinds


def find_cycles(graph: OwnershipGraph, start: str) -> list[list[str]]:
    """All distinct ownership cycles reachable upward from ``start``.

    Each cycle is returned as a node path walking owned -> owner and
    ending on its first node, e.g. ``["A", "B", "A"]``.
    """
    visiting, done = 1, 2
    state: dict[str, int] = {}
    stack: list[str] = []
    cycles: list[list[str]] = []
    seen: set[frozenset] = set()

    def visit(node: str):
        state[node] = visiting
        stack.append(node)
        for edge in graph.owners_of(node):
            nxt = edge.owner_id
            if state.get(nxt) == visiting:
                cycle = stack[stack.index(nxt):] + [nxt]
                key = frozenset(cycle)
                if key not in seen:
                    seen.add(key)
                    cycles.append(cycle)
            elif nxt not in state:
                visit(nxt)
        stack.pop()
        state[node] = done

    visit(start)
    return cycles


# ═══════════════════════════════════════════════════
# RESOLUTION
# ═══════════════════════════════════════════════════

@dataclass
class OwnershipResolution:
    target: str
    via: str | None = None
    owners: list[BeneficialOwner] = field(default_factory=list)
    integrity_errors: list[DataIntegrityError] = field(default_factory=list)
    owner_data_found: bool = False
    # Corporate owners at or over the threshold with no owner data of their own
    unresolved: dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "target": self.target,
            "via": self.via,
            "owners": [o.to_dict() for o in self.owners],
            "integrity_errors": [str(e) for e in self.integrity_errors],
            "owner_data_found": self.owner_data_found,
            "unresolved": dict(self.unresolved),
        }


def _describe_path(hops: list[OwnershipEdge]) -> str:
    """``hops`` run from the individual's edge down to the target's."""
    parts = [f"{_fmt_pct(h.percentage)} of {h.owned_id}" for h in hops]
    return ", which owns ".join(parts)


def resolve_beneficial_owners(
    graph: OwnershipGraph,
    target: str,
    threshold: float = BENEFICIAL_OWNERSHIP_THRESHOLD,
    via: str | None = None,
    known_statuses: Mapping[str, str | None] | None = None,
) -> OwnershipResolution:
    """Resolve individuals owning ``threshold``% or more of ``target``.

    Args:
        graph: ownership edges for the company and its shareholders' owners
        target: the company being verified
        threshold: beneficial-ownership threshold in percent
        via: restrict resolution to one direct corporate shareholder
        known_statuses: owner id -> prior verification status to inherit

    Returns:
        OwnershipResolution with owners sorted by effective percentage
        (descending), plus any cycle errors found on the way.
    """
    known_statuses = known_statuses or {}
    resolution = OwnershipResolution(target=target, via=via)

    for cycle in find_cycles(graph, via or target):
        msg = "ownership cycle: " + " <- ".join(cycle)
        logger.warning(f"Ownership [{target}]: {msg}")
        resolution.integrity_errors.append(DataIntegrityError(msg, cycle=cycle))

    found: dict[str, BeneficialOwner] = {}

    def walk(node: str, effective: float, on_path: list[str], hops: list[OwnershipEdge]):
        for edge in graph.owners_of(node):
            owner = edge.owner_id
            if owner in on_path:
                continue  # cycle, already reported
            share = round(effective * edge.percentage / 100, _PCT_PRECISION)
            if share < threshold:
                _trace(f"OWNERSHIP prune {owner} -> {node}: {share:g}% < {threshold:g}%")
                continue
            path_hops = [edge] + hops
            if graph.is_corporate(owner):
                if not graph.owners_of(owner):
                    _trace(f"OWNERSHIP dead end {owner}: {share:g}% of {target}, no owner data")
                    resolution.unresolved[owner] = max(share, resolution.unresolved.get(owner, 0.0))
                    continue
                walk(owner, share, on_path + [owner], path_hops)
                continue
            description = _describe_path(path_hops)
            existing = found.get(owner)
            if existing is None:
                found[owner] = BeneficialOwner(
                    name=owner,
                    direct_percentage=edge.percentage,
                    effective_percentage=share,
                    path_descriptions=[description],
                    requires_kyc=True,
                    verification_status=known_statuses.get(owner),
                )
            else:
                if share > existing.effective_percentage:
                    existing.effective_percentage = share
                    existing.direct_percentage = edge.percentage
                if description not in existing.path_descriptions:
                    existing.path_descriptions.append(description)
            _trace(f"OWNERSHIP {owner}: {share:g}% of {target} via {description}")

    for edge in graph.owners_of(target):
        shareholder = edge.owner_id
        if via is not None and shareholder != via:
            continue
        if not graph.is_corporate(shareholder):
            continue  # direct individual shareholders are verified in their own right
        if graph.owners_of(shareholder):
            resolution.owner_data_found = True
        if edge.percentage < threshold:
            _trace(f"OWNERSHIP skip {shareholder}: {edge.percentage:g}% < {threshold:g}%")
            continue
        walk(shareholder, edge.percentage, [target, shareholder], [edge])

    resolution.owners = sorted(found.values(), key=lambda o: (-o.effective_percentage, o.name))
    return resolution


# ═══════════════════════════════════════════════════
# GRAPH CONSTRUCTION FROM FACT STORE RECORDS
# ═══════════════════════════════════════════════════

def _owner_kind(entry: dict) -> str:
    if entry.get("owners"):
        return CORPORATE
    kind = str(entry.get("owner_type") or entry.get("type") or "").strip().lower()
    return CORPORATE if kind == "corporate" else INDIVIDUAL


def _owner_percentage(entry: dict) -> float | None:
    for key in ("direct_percentage", "ownership_percentage", "percentage"):
        value = entry.get(key)
        if value in (None, ""):
            continue
        try:
            return float(value)
        except (TypeError, ValueError):
            return None
    return None


def _add_raw_owners(graph: OwnershipGraph, owned: str, entries: Iterable[Any]):
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        name = str(entry.get("name") or "").strip()
        pct = _owner_percentage(entry)
        if not name or pct is None:
            logger.warning(f"Ownership: skipping malformed owner entry of {owned}: {entry!r}")
            continue
        try:
            graph.add_edge(name, owned, pct, owner_kind=_owner_kind(entry))
        except DataIntegrityError as e:
            logger.warning(f"Ownership: {e}")
            continue
        nested = entry.get("owners")
        if isinstance(nested, list) and nested:
            _add_raw_owners(graph, name, nested)


def node_id(record: EntityRecord) -> str:
    """Graph node for a shareholder record; owners are keyed by name."""
    return record.name or str(record.id)


def build_ownership_graph(company: str, shareholders: Iterable[EntityRecord]) -> OwnershipGraph:
    """Build the ownership graph of ``company`` from its shareholder records.

    Shareholders contribute ``shareholder -> company`` edges; corporate
    shareholders' stored beneficial owners contribute ``owner -> shareholder``
    edges, recursing into nested ``owners`` lists for corporate owners.
    """
    graph = OwnershipGraph()
    graph.add_node(company, CORPORATE)
    for record in shareholders:
        node = node_id(record)
        graph.add_node(node, CORPORATE if record.is_corporate else INDIVIDUAL)
        if record.ownership_percentage is not None:
            try:
                graph.add_edge(node, company, record.ownership_percentage)
            except DataIntegrityError as e:
                logger.warning(f"Ownership: {e}")
        if record.is_corporate and record.beneficial_owners_raw:
            _add_raw_owners(graph, node, record.beneficial_owners_raw)
    logger.info(f"Ownership graph for {company}: {len(graph.edges)} edge(s)")
    return graph


def collect_known_statuses(shareholders: Iterable[EntityRecord]) -> dict[str, str | None]:
    """Owner name -> verification status, from stored owner entries and records."""
    statuses: dict[str, str | None] = {}

    def collect(entries: Iterable[Any]):
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            name = str(entry.get("name") or "").strip()
            if name and entry.get("verification_status"):
                statuses.setdefault(name, entry["verification_status"])
            if isinstance(entry.get("owners"), list):
                collect(entry["owners"])

    records = list(shareholders)
    for record in records:
        collect(record.beneficial_owners_raw)
    for record in records:
        if not record.is_corporate and record.name and record.prior_verification_status:
            statuses.setdefault(record.name, record.prior_verification_status)
    return statuses


# ═══════════════════════════════════════════════════
# ISSUES
# ═══════════════════════════════════════════════════

_STATUS_ISSUES = {
    None: ("unset", "Beneficial owner requires KYC but verification status not set"),
    "notverified": ("notverified", "Beneficial owner failed verification"),
    "pending": ("pending", "Beneficial owner verification pending"),
    "beneficial_ownership_incomplete": ("pending", "Beneficial owner verification pending"),
}


def ownership_issues(
    resolution: OwnershipResolution,
    record: EntityRecord,
    threshold: float = BENEFICIAL_OWNERSHIP_THRESHOLD,
) -> list[OwnershipIssue]:
    """Issues for a corporate shareholder at or over the threshold.

    Individuals and corporates below the threshold never carry ownership
    issues.
    """
    pct = record.ownership_percentage
    if not record.is_corporate or pct is None or pct < threshold:
        return []
    if not resolution.owner_data_found:
        return [OwnershipIssue(
            owner_name="Missing",
            issue="missing",
            description=(
                f"No beneficial owners identified for corporate shareholder "
                f"with {_fmt_pct(threshold)}+ ownership"
            ),
        )]
    issues = []
    for owner in resolution.owners:
        if not owner.requires_kyc:
            continue
        status = owner.verification_status or None
        if status in _STATUS_ISSUES:
            issue, description = _STATUS_ISSUES[status]
            issues.append(OwnershipIssue(owner_name=owner.name or "Unknown", issue=issue, description=description))
    for name, share in sorted(resolution.unresolved.items()):
        issues.append(OwnershipIssue(
            owner_name=name,
            issue="missing",
            description=(
                f"No beneficial owners identified for corporate owner "
                f"with {_fmt_pct(share)} effective ownership"
            ),
        ))
    return issues
