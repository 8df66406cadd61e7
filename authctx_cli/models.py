"""Records exchanged between the extraction, resolution, correlation and
projection stages."""

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


class SourceKind(str, Enum):
    DIRECTORY_ROLE_POLICY = "DirectoryRolePolicy"
    GROUP_ROLE_POLICY = "GroupRolePolicy"
    AZURE_RESOURCE_POLICY = "AzureResourcePolicy"
    CONDITIONAL_ACCESS = "ConditionalAccess"
    PROTECTED_ACTION = "ProtectedAction"
    SENSITIVITY_LABEL = "SensitivityLabel"
    SITE = "Site"
    GROUP = "Group"


class ResolvedVia(str, Enum):
    CACHE = "cache"
    WELL_KNOWN = "wellKnown"
    PRIMARY_ENDPOINT = "primaryEndpoint"
    FALLBACK_ENDPOINT = "fallbackEndpoint"
    TEMPLATE_ENDPOINT = "templateEndpoint"
    UNRESOLVED = "unresolved"


class Scope(str, Enum):
    ROLE = "Role"
    GROUP = "Group"
    SITE = "Site"
    POLICY = "Policy"
    ACTION = "Action"
    LABEL = "Label"


class RelationKind(str, Enum):
    DIRECT = "Direct"
    INHERITED_VIA_LABEL = "InheritedViaLabel"
    INHERITED_VIA_GUESS = "InheritedViaGuess"


# Lower rank wins when the same site is reached through several joins
RELATION_PRECEDENCE = {
    RelationKind.DIRECT: 0,
    RelationKind.INHERITED_VIA_LABEL: 1,
    RelationKind.INHERITED_VIA_GUESS: 2,
}


class Domain(str, Enum):
    """Output sections of the inventory, in report order."""

    CONDITIONAL_ACCESS = "Conditional Access"
    DIRECTORY_ROLES = "Directory Roles"
    GROUP_ROLES = "Group Roles"
    AZURE_RESOURCE_ROLES = "Azure Resource Roles"
    PROTECTED_ACTIONS = "Protected Actions"
    SENSITIVITY_LABELS = "Sensitivity Labels"
    GROUPS = "Groups"
    SITES = "Sites"


class ErrorKind(str, Enum):
    MALFORMED_DOCUMENT = "malformed_document"
    UNRESOLVED_IDENTIFIER = "unresolved_identifier"
    LOOKUP_FAILED = "lookup_failed"
    MISSING_COLLECTION = "missing_collection"
    NO_STRUCTURAL_LINK = "no_structural_link"
    GUESS_REJECTED = "guess_rejected"
    DOMAIN_FAILED = "domain_failed"


@dataclass(frozen=True)
class MarkerReference:
    """One extracted fact: a policy object that references authentication contexts."""

    source_kind: SourceKind
    owner_id: str
    scope_id: str
    scope_type: str
    marker_ids: frozenset = frozenset()
    marker_tokens: frozenset = frozenset()
    role_ref: Optional[str] = None

    def __post_init__(self):
        if not self.marker_ids and not self.marker_tokens:
            raise ValueError(f"MarkerReference for {self.owner_id!r} carries no marker")

    @property
    def markers(self) -> List[str]:
        """Ids first, then tokens, each sorted for reproducible output."""
        return sorted(self.marker_ids) + sorted(self.marker_tokens)


@dataclass(frozen=True)
class ResolvedName:
    key: str
    display_name: str
    resolved_via: ResolvedVia


@dataclass(frozen=True)
class CorrelatedRecord:
    domain: Domain
    scope: Scope
    entity_id: str
    marker_id: str
    relation: RelationKind = RelationKind.DIRECT
    entity_name: Optional[str] = None
    marker_name: Optional[str] = None
    detail: str = ""
    detail_id: Optional[str] = None  # resolved into the detail column when set


COLUMNS = (
    "Domain",
    "Scope",
    "Entity",
    "Entity ID",
    "Authentication Context",
    "Context ID",
    "Relation",
    "Detail",
)


@dataclass(frozen=True)
class InventoryRow:
    domain: str
    scope: str
    entity_name: str
    entity_id: str
    marker_name: str
    marker_id: str
    relation: str
    detail: str = ""
    is_placeholder: bool = False

    def cells(self) -> Tuple[str, ...]:
        """Cell values in ``COLUMNS`` order."""
        return (
            self.domain,
            self.scope,
            self.entity_name,
            self.entity_id,
            self.marker_name,
            self.marker_id,
            self.relation,
            self.detail,
        )

    def as_dict(self) -> Dict[str, str]:
        return dict(zip(COLUMNS, self.cells()))


@dataclass(frozen=True)
class Diagnostic:
    kind: ErrorKind
    source: str
    detail: str = ""


class Diagnostics:
    """Run-level record of every condition the engine recovered from."""

    def __init__(self):
        self._lock = threading.Lock()
        self.entries: List[Diagnostic] = []

    def record(self, kind: ErrorKind, source: str, detail: str = "") -> Diagnostic:
        entry = Diagnostic(kind=kind, source=source, detail=detail)
        with self._lock:
            self.entries.append(entry)
        logger.info("%s in %s: %s", kind.value, source, detail or "-")
        return entry

    def count(self, kind: ErrorKind) -> int:
        with self._lock:
            return sum(1 for e in self.entries if e.kind == kind)

    def counts(self) -> Dict[str, int]:
        totals: Dict[str, int] = {}
        with self._lock:
            for e in self.entries:
                totals[e.kind.value] = totals.get(e.kind.value, 0) + 1
        return totals

    def __len__(self) -> int:
        return len(self.entries)


@dataclass
class CorrelationContext:
    """State for a single inventory run.

    Created by the caller and passed to every engine component. The join maps
    are written only by the correlation graph builder.
    """

    diagnostics: Diagnostics = field(default_factory=Diagnostics)
    names: Dict[str, ResolvedName] = field(default_factory=dict)
    # label id -> (marker id, marker name)
    label_markers: Dict[str, Tuple[str, str]] = field(default_factory=dict)
    # group id -> (marker id, marker name)
    group_markers: Dict[str, Tuple[str, str]] = field(default_factory=dict)
    # group id -> normalized site urls recorded as owned by that group
    group_sites: Dict[str, List[str]] = field(default_factory=dict)
