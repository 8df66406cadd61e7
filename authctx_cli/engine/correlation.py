"""Cross-domain joins: policy documents, labels, groups and sites.

Policy domains (conditional access, PIM role policies, protected actions) map
one extracted reference to one record per marker. The label → group → site
chain runs in a fixed order:

  1. label  → marker            first marker per label
  2. group  → marker  Direct    via the group's assigned label
  3. site   → marker  Direct    marker set natively on the site
  4. site   → marker  InheritedViaLabel   site records its owning group
  5. site   → marker  InheritedViaGuess   no recorded link: derive the site
                                          address from the group alias and
                                          confirm it exists
  6. one row per site, Direct > InheritedViaLabel > InheritedViaGuess

Every step tolerates a missing input collection by contributing no records.
"""

import logging
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Set, Tuple
from urllib.parse import urlsplit

from ..config import SHAREPOINT_ROOT_URL, SITE_URL_TEMPLATES
from ..models import (
    RELATION_PRECEDENCE,
    CorrelatedRecord,
    CorrelationContext,
    Domain,
    ErrorKind,
    RelationKind,
    Scope,
    SourceKind,
)
from .extractor import (
    MalformedDocument,
    RuleExtractor,
    find_role_reference,
    fold_key_value_settings,
    parse_document,
)
from .resolver import KIND_GROUP, KIND_MARKER, KIND_ROLE, IdentifierResolver, normalize_key

logger = logging.getLogger(__name__)

ROLE_POLICY_DOMAINS = {
    SourceKind.DIRECTORY_ROLE_POLICY: Domain.DIRECTORY_ROLES,
    SourceKind.GROUP_ROLE_POLICY: Domain.GROUP_ROLES,
    SourceKind.AZURE_RESOURCE_POLICY: Domain.AZURE_RESOURCE_ROLES,
}

_MARKER_NAME_FIELDS = ("authenticationContextName",)
_SITE_GROUP_FIELDS = ("groupId", "relatedGroupId")
_GROUP_LABEL_FIELDS = ("sensitivityLabelId", "labelId")

# SharePoint reports this for sites that are not connected to a group
EMPTY_GUID = "00000000-0000-0000-0000-000000000000"


def normalize_url(url: Optional[str]) -> str:
    return (url or "").strip().rstrip("/").lower()


def _first_str(doc: dict, names: Iterable[str]) -> Optional[str]:
    """First non-empty string among *names*, case-insensitive, top level then ``properties``."""
    if not isinstance(doc, dict):
        return None
    layers = [doc]
    props = doc.get("properties")
    if isinstance(props, dict):
        layers.append(props)
    wanted = {n.lower() for n in names}
    for layer in layers:
        for key, value in layer.items():
            if isinstance(key, str) and key.lower() in wanted:
                if isinstance(value, str) and value.strip():
                    return value.strip()
    return None


def policy_rules(doc: dict) -> Optional[list]:
    """The rule list of a PIM policy or policy assignment, wherever the API put it."""
    if not isinstance(doc, dict):
        return None
    props = doc.get("properties") if isinstance(doc.get("properties"), dict) else {}
    policy = doc.get("policy") if isinstance(doc.get("policy"), dict) else {}
    for candidate in (
        doc.get("rules"),
        policy.get("rules"),
        props.get("effectiveRules"),
        props.get("rules"),
        doc.get("effectiveRules"),
    ):
        if isinstance(candidate, list):
            return candidate
    return None


def _is_disabled(rule) -> bool:
    if not isinstance(rule, dict):
        return False
    enabled = rule.get("isEnabled")
    return enabled is False or (isinstance(enabled, str) and enabled.lower() == "false")


def infer_sharepoint_root(sites: Optional[list]) -> str:
    """``https://<tenant>.sharepoint.com`` taken from the first site URL that has one."""
    for site in sites or []:
        if not isinstance(site, dict):
            continue
        url = site.get("webUrl") or site.get("url") or ""
        parts = urlsplit(url)
        if parts.scheme and parts.netloc:
            return f"{parts.scheme}://{parts.netloc}"
    return ""


class CorrelationGraphBuilder:
    """Builds CorrelatedRecords for every domain of the inventory."""

    def __init__(
        self,
        context: CorrelationContext,
        resolver: IdentifierResolver,
        extractor: Optional[RuleExtractor] = None,
        site_confirmer: Optional[Callable[[str], Optional[dict]]] = None,
        sharepoint_root: str = "",
    ):
        self.context = context
        self.resolver = resolver
        self.extractor = extractor or RuleExtractor(context)
        self.site_confirmer = site_confirmer
        self.sharepoint_root = (sharepoint_root or SHAREPOINT_ROOT_URL).rstrip("/")
        self._marker_ids_by_name: Dict[str, str] = {}
        self._indexed_groups: Optional[list] = None
        self._groups_by_id: Dict[str, dict] = {}

    def index_markers(self, markers: Optional[list]) -> None:
        """Remember marker display names so name-only assignments can be matched."""
        for m in markers or []:
            if isinstance(m, dict) and m.get("id") and m.get("displayName"):
                self._marker_ids_by_name[str(m["displayName"]).strip().lower()] = str(m["id"])

    def _documents(self, items: Optional[list], source_kind: SourceKind) -> Iterator[dict]:
        """Objects of a collection; JSON text is parsed, anything unusable is counted and skipped."""
        for index, item in enumerate(items or []):
            try:
                doc = parse_document(item)
            except MalformedDocument as e:
                self.context.diagnostics.record(
                    ErrorKind.MALFORMED_DOCUMENT, f"{source_kind.value}[{index}]", str(e),
                )
                continue
            if isinstance(doc, dict):
                yield doc
            else:
                self.context.diagnostics.record(
                    ErrorKind.MALFORMED_DOCUMENT, f"{source_kind.value}[{index}]", "expected an object",
                )

    def _group_index(self, groups: Optional[list]) -> Dict[str, dict]:
        """Groups keyed by normalized id; parsed once per collection so bad entries count once."""
        if self._indexed_groups is not groups:
            self._indexed_groups = groups
            self._groups_by_id = {
                normalize_key(g.get("id")): g
                for g in self._documents(groups, SourceKind.GROUP) if g.get("id")
            }
        return self._groups_by_id

    # ── Policy domains ────────────────────────────────────────────────

    def conditional_access_records(self, policies: Optional[list]) -> List[CorrelatedRecord]:
        records = []
        for policy in self._documents(policies, SourceKind.CONDITIONAL_ACCESS):
            pid = str(policy.get("id", ""))
            ref = self.extractor.extract(policy, SourceKind.CONDITIONAL_ACCESS, pid,
                                         scope_id="/", scope_type="Tenant")
            if ref is None:
                continue
            for marker in ref.markers:
                records.append(CorrelatedRecord(
                    domain=Domain.CONDITIONAL_ACCESS,
                    scope=Scope.POLICY,
                    entity_id=pid,
                    entity_name=policy.get("displayName") or None,
                    marker_id=marker,
                    detail=str(policy.get("state", "") or ""),
                ))
        return records

    def role_policy_records(self, assignments: Optional[list], source_kind: SourceKind) -> List[CorrelatedRecord]:
        """PIM policy assignments for directory roles, groups or Azure resources."""
        domain = ROLE_POLICY_DOMAINS[source_kind]
        records = []
        for doc in self._documents(assignments, source_kind):
            props = doc.get("properties") if isinstance(doc.get("properties"), dict) else {}
            owner_id = str(doc.get("policyId") or props.get("policyId") or doc.get("id") or "")
            scope_id = str(doc.get("scopeId") or props.get("scope") or doc.get("scope") or "")
            scope_type = str(doc.get("scopeType") or props.get("scopeType") or "")
            role_ref = find_role_reference(doc)

            rules = policy_rules(doc)
            if rules is None:
                ref = self.extractor.extract(doc, source_kind, owner_id, scope_id, scope_type, role_ref)
            else:
                active = [r for r in rules if not _is_disabled(r)]
                ref = self.extractor.extract_all(active, source_kind, owner_id, scope_id, scope_type, role_ref)
            if ref is None:
                continue

            role_id = ref.role_ref or role_ref
            for marker in ref.markers:
                if source_kind == SourceKind.GROUP_ROLE_POLICY:
                    records.append(CorrelatedRecord(
                        domain=domain,
                        scope=Scope.GROUP,
                        entity_id=scope_id or owner_id,
                        marker_id=marker,
                        detail_id=role_id,
                    ))
                elif source_kind == SourceKind.AZURE_RESOURCE_POLICY:
                    records.append(CorrelatedRecord(
                        domain=domain,
                        scope=Scope.ROLE,
                        entity_id=role_id or owner_id,
                        entity_name=_arm_role_display_name(props),
                        marker_id=marker,
                        detail=scope_id,
                    ))
                else:
                    records.append(CorrelatedRecord(
                        domain=domain,
                        scope=Scope.ROLE,
                        entity_id=role_id or owner_id,
                        marker_id=marker,
                        detail="Directory" if scope_id in ("", "/") else scope_id,
                    ))
        return records

    def protected_action_records(self, actions: Optional[list]) -> List[CorrelatedRecord]:
        records = []
        for action in self._documents(actions, SourceKind.PROTECTED_ACTION):
            aid = str(action.get("id") or action.get("name") or "")
            ref = self.extractor.extract(action, SourceKind.PROTECTED_ACTION, aid)
            if ref is None:
                continue
            for marker in ref.markers:
                records.append(CorrelatedRecord(
                    domain=Domain.PROTECTED_ACTIONS,
                    scope=Scope.ACTION,
                    entity_id=aid,
                    entity_name=action.get("name") or action.get("displayName") or None,
                    marker_id=marker,
                    detail=str(action.get("description", "") or ""),
                ))
        return records

    # ── Step 1: label → marker ────────────────────────────────────────

    def label_records(self, labels: Optional[list]) -> List[CorrelatedRecord]:
        records = []
        for label in self._documents(labels, SourceKind.SENSITIVITY_LABEL):
            lid = str(label.get("id") or label.get("ImmutableId") or label.get("Guid") or "")
            if not lid:
                continue
            markers = self._markers_of(fold_key_value_settings(label), SourceKind.SENSITIVITY_LABEL, lid)
            if not markers:
                continue
            # groups and sites inherit the first marker only
            self.context.label_markers[normalize_key(lid)] = markers[0]
            name = label.get("displayName") or label.get("name") or label.get("DisplayName") or None
            for marker_id, marker_name in markers:
                records.append(CorrelatedRecord(
                    domain=Domain.SENSITIVITY_LABELS,
                    scope=Scope.LABEL,
                    entity_id=lid,
                    entity_name=name,
                    marker_id=marker_id,
                    marker_name=marker_name,
                ))
        return records

    # ── Step 2: group → marker ────────────────────────────────────────

    def group_records(self, groups: Optional[list]) -> List[CorrelatedRecord]:
        records = []
        groups_by_id = self._group_index(groups)
        if not self.context.label_markers:
            return records
        for group in groups_by_id.values():
            gid = str(group["id"])
            for label_id, label_name in _assigned_labels(group):
                marker = self.context.label_markers.get(normalize_key(label_id))
                if marker is None:
                    continue
                self.context.group_markers[normalize_key(gid)] = marker
                records.append(CorrelatedRecord(
                    domain=Domain.GROUPS,
                    scope=Scope.GROUP,
                    entity_id=gid,
                    entity_name=group.get("displayName") or None,
                    marker_id=marker[0],
                    marker_name=marker[1],
                    detail=f"label: {label_name or label_id}",
                ))
                break
        return records

    # ── Steps 3–6: sites ──────────────────────────────────────────────

    def site_records(self, sites: Optional[list], groups: Optional[list]) -> List[CorrelatedRecord]:
        candidates: List[CorrelatedRecord] = []
        site_names: Dict[str, str] = {}

        # 3. native assignment, and the structural group links for step 4
        for site in self._documents(sites, SourceKind.SITE):
            url = normalize_url(site.get("webUrl") or site.get("url") or site.get("id"))
            if not url:
                continue
            name = site.get("displayName") or site.get("name") or site.get("title") or ""
            site_names[url] = name

            owner_group = _first_str(site, _SITE_GROUP_FIELDS)
            if owner_group and owner_group != EMPTY_GUID:
                links = self.context.group_sites.setdefault(normalize_key(owner_group), [])
                if url not in links:
                    links.append(url)

            marker = self._marker_of(site, SourceKind.SITE, url)
            if marker is not None:
                candidates.append(self._site_record(url, name, marker, RelationKind.DIRECT))

        # 4 + 5. sites inheriting a group's marker
        groups_by_id = self._group_index(groups)
        for gid, marker in self.context.group_markers.items():
            linked = self.context.group_sites.get(gid, [])
            if linked:
                for url in linked:
                    candidates.append(self._site_record(
                        url, site_names.get(url, ""), marker, RelationKind.INHERITED_VIA_LABEL,
                        detail=f"group: {_group_label(groups_by_id.get(gid), gid)}",
                    ))
                continue
            guessed = self._guess_site(groups_by_id.get(gid), gid, site_names)
            if guessed is not None:
                url, name = guessed
                candidates.append(self._site_record(
                    url, name, marker, RelationKind.INHERITED_VIA_GUESS,
                    detail=f"group: {_group_label(groups_by_id.get(gid), gid)} (address derived from alias)",
                ))

        return dedupe_sites(candidates)

    def _site_record(self, url: str, name: str, marker: Tuple[str, str], relation: RelationKind,
                     detail: str = "") -> CorrelatedRecord:
        return CorrelatedRecord(
            domain=Domain.SITES,
            scope=Scope.SITE,
            entity_id=url,
            entity_name=name or url,
            marker_id=marker[0],
            marker_name=marker[1],
            relation=relation,
            detail=detail,
        )

    def _guess_site(self, group: Optional[dict], gid: str, site_names: Dict[str, str]) -> Optional[Tuple[str, str]]:
        alias = (group or {}).get("mailNickname")
        if not alias or not self.sharepoint_root:
            self.context.diagnostics.record(
                ErrorKind.NO_STRUCTURAL_LINK, f"group:{gid}",
                "no linked site and no alias/root to derive one",
            )
            return None

        for template in SITE_URL_TEMPLATES:
            candidate = template.format(root=self.sharepoint_root, alias=alias)
            url = normalize_url(candidate)
            if self.site_confirmer is not None:
                try:
                    found = self.site_confirmer(candidate)
                except Exception as e:
                    self.context.diagnostics.record(ErrorKind.LOOKUP_FAILED, f"confirm_site({candidate})", str(e))
                    found = None
                if found:
                    name = found.get("displayName", "") if isinstance(found, dict) else ""
                    return url, name or site_names.get(url, "")
            elif url in site_names:
                return url, site_names[url]

        self.context.diagnostics.record(
            ErrorKind.GUESS_REJECTED, f"group:{gid}",
            f"no site found at derived addresses for alias {alias!r}",
        )
        return None

    # ── Marker lookup on a single object ──────────────────────────────

    def _marker_of(self, doc: dict, source_kind: SourceKind, owner_id: str) -> Optional[Tuple[str, str]]:
        """(marker id, marker name) for the first marker *doc* carries."""
        markers = self._markers_of(doc, source_kind, owner_id)
        return markers[0] if markers else None

    def _markers_of(self, doc: dict, source_kind: SourceKind, owner_id: str) -> List[Tuple[str, str]]:
        ref = self.extractor.extract(doc, source_kind, owner_id)
        if ref is not None:
            return [(mid, self.resolver.resolve_marker_name(mid)) for mid in ref.markers]

        name = _first_str(doc, _MARKER_NAME_FIELDS)
        if name:
            return [(self._marker_ids_by_name.get(name.lower(), name), name)]
        return []


def _assigned_labels(group: dict) -> List[Tuple[str, str]]:
    """(label id, label name) pairs assigned to a group, in the order listed."""
    labels = []
    for item in group.get("assignedLabels") or []:
        if isinstance(item, dict) and item.get("labelId"):
            labels.append((str(item["labelId"]), str(item.get("displayName", "") or "")))
        elif isinstance(item, str):
            labels.append((item, ""))
    single = _first_str(group, _GROUP_LABEL_FIELDS)
    if single:
        labels.append((single, ""))
    return labels


def _group_label(group: Optional[dict], gid: str) -> str:
    if group and group.get("displayName"):
        return str(group["displayName"])
    return gid


def _arm_role_display_name(props: dict) -> Optional[str]:
    expanded = props.get("policyAssignmentProperties")
    if isinstance(expanded, dict):
        role = expanded.get("roleDefinition")
        if isinstance(role, dict) and role.get("displayName"):
            return str(role["displayName"])
    return None


def dedupe_sites(records: List[CorrelatedRecord]) -> List[CorrelatedRecord]:
    """One record per site URL, keeping the strongest relation. First seen wins ties."""
    best: Dict[str, CorrelatedRecord] = {}
    for record in records:
        current = best.get(record.entity_id)
        if current is None or RELATION_PRECEDENCE[record.relation] < RELATION_PRECEDENCE[current.relation]:
            best[record.entity_id] = record
    return list(best.values())


def collect_name_requests(records: Iterable[CorrelatedRecord]) -> Dict[str, Set[str]]:
    """Ids that still need a display name, grouped by resolver kind."""
    wanted: Dict[str, Set[str]] = {KIND_ROLE: set(), KIND_GROUP: set(), KIND_MARKER: set()}
    for r in records:
        if not r.marker_name:
            wanted[KIND_MARKER].add(r.marker_id)
        if not r.entity_name:
            if r.scope == Scope.ROLE:
                wanted[KIND_ROLE].add(r.entity_id)
            elif r.scope == Scope.GROUP:
                wanted[KIND_GROUP].add(r.entity_id)
        if r.detail_id:
            wanted[KIND_ROLE].add(r.detail_id)
    return wanted
