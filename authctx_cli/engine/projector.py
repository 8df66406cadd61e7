"""Shape correlated records into the rows the report renderer consumes."""

from typing import Dict, Iterable, List, Optional

from ..config import NO_DATA_LABEL
from ..models import CorrelatedRecord, Domain, InventoryRow, ResolvedName
from .resolver import degraded_name, normalize_key


def _name(key: Optional[str], explicit: Optional[str], names: Dict[str, ResolvedName]) -> str:
    if explicit:
        return explicit
    resolved = names.get(normalize_key(key))
    if resolved is not None and resolved.display_name:
        return resolved.display_name
    return degraded_name(key or "")


def placeholder_row(domain: Domain) -> InventoryRow:
    """The single row shown for a domain with nothing to report."""
    return InventoryRow(
        domain=domain.value,
        scope="-",
        entity_name=NO_DATA_LABEL,
        entity_id="-",
        marker_name="-",
        marker_id="-",
        relation="-",
        detail="",
        is_placeholder=True,
    )


def project(
    records: Iterable[CorrelatedRecord],
    resolved_names: Dict[str, ResolvedName],
    domain: Domain,
) -> List[InventoryRow]:
    """Rows for one domain: named, deduplicated on (entity, marker), sorted.

    Always returns at least one row; an empty domain yields the placeholder.
    """
    rows: List[InventoryRow] = []
    seen = set()
    for r in records:
        key = (normalize_key(r.entity_id), normalize_key(r.marker_id))
        if key in seen:
            continue
        seen.add(key)

        detail = r.detail
        if r.detail_id:
            role = _name(r.detail_id, None, resolved_names)
            detail = f"{detail} ({role})" if detail else role

        rows.append(InventoryRow(
            domain=domain.value,
            scope=r.scope.value,
            entity_name=_name(r.entity_id, r.entity_name, resolved_names),
            entity_id=r.entity_id or "-",
            marker_name=_name(r.marker_id, r.marker_name, resolved_names),
            marker_id=r.marker_id,
            relation=r.relation.value,
            detail=detail,
        ))

    if not rows:
        return [placeholder_row(domain)]

    rows.sort(key=lambda row: (row.entity_name.lower(), row.marker_name.lower(), row.entity_id))
    return rows


def project_all(
    records_by_domain: Dict[Domain, List[CorrelatedRecord]],
    resolved_names: Dict[str, ResolvedName],
) -> Dict[Domain, List[InventoryRow]]:
    """Every domain in report order, including ones that produced nothing."""
    return {
        domain: project(records_by_domain.get(domain) or [], resolved_names, domain)
        for domain in Domain
    }


def summarize_markers(
    markers: Optional[list],
    rows_by_domain: Dict[Domain, List[InventoryRow]],
    resolved_names: Dict[str, ResolvedName],
) -> List[Dict[str, str]]:
    """Authentication context catalogue with how often each one is referenced.

    Markers referenced by policies but missing from the catalogue are listed
    too, flagged as not in the catalogue.
    """
    usage: Dict[str, Dict[str, int]] = {}
    for domain, rows in rows_by_domain.items():
        for row in rows:
            if row.is_placeholder:
                continue
            counts = usage.setdefault(normalize_key(row.marker_id), {})
            counts[domain.value] = counts.get(domain.value, 0) + 1

    summary = []
    catalogued = set()
    for m in markers or []:
        if not isinstance(m, dict) or not m.get("id"):
            continue
        mid = str(m["id"])
        catalogued.add(normalize_key(mid))
        summary.append(_summary_entry(
            mid, m.get("displayName") or _name(mid, None, resolved_names),
            m.get("isAvailable"), usage.get(normalize_key(mid), {}),
        ))
    for mid, counts in usage.items():
        if mid in catalogued:
            continue
        summary.append(_summary_entry(mid, _name(mid, None, resolved_names), None, counts,
                                      catalogued=False))

    summary.sort(key=lambda e: (e["Name"].lower(), e["ID"]))
    return summary


def _summary_entry(mid: str, name: str, available, counts: Dict[str, int],
                   catalogued: bool = True) -> Dict[str, str]:
    if available is None:
        status = "-" if catalogued else "not in catalogue"
    else:
        status = "available" if available else "unavailable"
    used_in = ", ".join(f"{d} ({n})" for d, n in sorted(counts.items()))
    return {
        "ID": mid,
        "Name": name,
        "Status": status,
        "References": str(sum(counts.values())),
        "Used In": used_in or "-",
    }
