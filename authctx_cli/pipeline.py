"""Single batch pass from a raw tenant snapshot to inventory rows."""

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from .config import RESOLVER_MAX_WORKERS, SHAREPOINT_ROOT_URL
from .engine.correlation import (
    CorrelationGraphBuilder,
    collect_name_requests,
    infer_sharepoint_root,
)
from .engine.extractor import RuleExtractor
from .engine.projector import project_all, summarize_markers
from .engine.resolver import IdentifierResolver
from .models import (
    COLUMNS,
    CorrelatedRecord,
    CorrelationContext,
    Diagnostics,
    Domain,
    ErrorKind,
    InventoryRow,
    SourceKind,
)
from .snapshot import TenantSnapshot

logger = logging.getLogger(__name__)

# Snapshot collections each domain cannot do without
DOMAIN_INPUTS = {
    Domain.CONDITIONAL_ACCESS: ("conditional_access_policies",),
    Domain.DIRECTORY_ROLES: ("directory_role_policies",),
    Domain.GROUP_ROLES: ("group_role_policies",),
    Domain.AZURE_RESOURCE_ROLES: ("azure_resource_policies",),
    Domain.PROTECTED_ACTIONS: ("protected_actions",),
    Domain.SENSITIVITY_LABELS: ("sensitivity_labels",),
    Domain.GROUPS: ("sensitivity_labels", "groups"),
    Domain.SITES: ("sites",),
}


@dataclass
class InventoryResult:
    rows: Dict[Domain, List[InventoryRow]]
    markers: List[Dict[str, str]]
    diagnostics: Diagnostics
    unavailable: List[str] = field(default_factory=list)

    def reference_count(self) -> int:
        return sum(1 for rows in self.rows.values() for r in rows if not r.is_placeholder)

    def to_dict(self) -> dict:
        return {
            "columns": list(COLUMNS),
            "domains": {
                domain.value: [row.as_dict() for row in rows]
                for domain, rows in self.rows.items()
            },
            "authenticationContexts": self.markers,
            "unavailable": self.unavailable,
            "diagnostics": {
                "counts": self.diagnostics.counts(),
                "entries": [
                    {"kind": d.kind.value, "source": d.source, "detail": d.detail}
                    for d in self.diagnostics.entries
                ],
            },
        }


def build_inventory(
    snapshot: TenantSnapshot,
    lookup=None,
    site_confirmer: Optional[Callable[[str], Optional[dict]]] = None,
    context: Optional[CorrelationContext] = None,
    max_workers: int = RESOLVER_MAX_WORKERS,
) -> InventoryResult:
    """Correlate every domain of *snapshot* into inventory rows.

    *lookup* supplies the network tiers of name resolution and
    *site_confirmer* checks derived site addresses; both are optional, and
    the connector provides both when running online.
    """
    context = context or CorrelationContext()
    extractor = RuleExtractor(context)
    resolver = IdentifierResolver(context, lookup=lookup, max_workers=max_workers)
    resolver.seed_markers(snapshot.markers)
    resolver.seed_groups(snapshot.groups)

    builder = CorrelationGraphBuilder(
        context,
        resolver,
        extractor=extractor,
        site_confirmer=site_confirmer,
        sharepoint_root=(snapshot.sharepoint_root_url or SHAREPOINT_ROOT_URL
                         or infer_sharepoint_root(snapshot.sites)),
    )
    builder.index_markers(snapshot.markers)

    unavailable = []
    for domain, inputs in DOMAIN_INPUTS.items():
        missing = [name for name in inputs if getattr(snapshot, name) is None]
        if missing:
            unavailable.append(domain.value)
            context.diagnostics.record(ErrorKind.MISSING_COLLECTION, domain.value, ", ".join(missing))

    steps = [
        (Domain.CONDITIONAL_ACCESS, lambda: builder.conditional_access_records(snapshot.conditional_access_policies)),
        (Domain.DIRECTORY_ROLES, lambda: builder.role_policy_records(
            snapshot.directory_role_policies, SourceKind.DIRECTORY_ROLE_POLICY)),
        (Domain.GROUP_ROLES, lambda: builder.role_policy_records(
            snapshot.group_role_policies, SourceKind.GROUP_ROLE_POLICY)),
        (Domain.AZURE_RESOURCE_ROLES, lambda: builder.role_policy_records(
            snapshot.azure_resource_policies, SourceKind.AZURE_RESOURCE_POLICY)),
        (Domain.PROTECTED_ACTIONS, lambda: builder.protected_action_records(snapshot.protected_actions)),
        # label → group → site must run in this order
        (Domain.SENSITIVITY_LABELS, lambda: builder.label_records(snapshot.sensitivity_labels)),
        (Domain.GROUPS, lambda: builder.group_records(snapshot.groups)),
        (Domain.SITES, lambda: builder.site_records(snapshot.sites, snapshot.groups)),
    ]

    records: Dict[Domain, List[CorrelatedRecord]] = {}
    for domain, step in steps:
        try:
            records[domain] = step()
        except Exception as e:
            logger.warning("%s correlation failed: %s", domain.value, e)
            context.diagnostics.record(ErrorKind.DOMAIN_FAILED, domain.value, str(e))
            records[domain] = []
        logger.info("%s: %d correlated record(s)", domain.value, len(records[domain]))

    all_records = [r for rs in records.values() for r in rs]
    for kind, keys in collect_name_requests(all_records).items():
        if keys:
            resolver.resolve_many(kind, sorted(keys))

    rows = project_all(records, context.names)
    markers = summarize_markers(snapshot.markers, rows, context.names)

    if resolver.lookups_performed:
        logger.info("Name resolution: %d lookup(s), %d cached name(s)",
                    resolver.lookups_performed, len(context.names))

    return InventoryResult(
        rows=rows,
        markers=markers,
        diagnostics=context.diagnostics,
        unavailable=unavailable,
    )
