"""Identifier → display name resolution.

Lookups go through tiers, cheapest first, and stop at the first hit:

  roles    cache → group sentinels → well-known table → role definition
           → role template → active directory role → unresolved
  markers  cache → snapshot catalogue → authentication context endpoint
           → unresolved
  groups   cache → snapshot groups → group endpoint → unresolved

Network tiers go through a ``lookup`` object (normally the Microsoft
connector). Any exception it raises is treated as a miss. An id that no tier
can name gets a shortened form of itself as display value; resolution never
fails the run.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from typing import Callable, Dict, Iterable, Optional

from ..config import RESOLVER_MAX_WORKERS, UNRESOLVED_KEEP_CHARS, UNRESOLVED_MAX_LENGTH
from ..models import CorrelationContext, ErrorKind, ResolvedName, ResolvedVia
from .extractor import GUID_RE

logger = logging.getLogger(__name__)

KIND_ROLE = "role"
KIND_MARKER = "marker"
KIND_GROUP = "group"

# ── Built-in role ids ─────────────────────────────────────────────────────
# Entra ID role template ids and Azure RBAC built-in role definition ids.
# These cover most lookups in a typical tenant without a network call.

WELL_KNOWN_ROLES = {
    "62e90394-69f5-4237-9190-012177145e10": "Global Administrator",
    "e8611ab8-c189-46e8-94e1-60213ab1f814": "Privileged Role Administrator",
    "7be44c8a-adaf-4e2a-84d6-ab2649e08a13": "Privileged Authentication Administrator",
    "194ae4cb-b126-40b2-bd5b-6091b380977d": "Security Administrator",
    "5d6b6bb7-de71-4623-b4af-96380a352509": "Security Reader",
    "f2ef992c-3afb-46b9-b7cf-a126ee74c451": "Global Reader",
    "b1be1c3e-b65d-4f19-8427-f6fa0d97feb9": "Conditional Access Administrator",
    "c4e39bd9-1100-46d3-8c65-fb160da0071f": "Authentication Administrator",
    "fe930be7-5e62-47db-91af-98c3a49a38b1": "User Administrator",
    "729827e3-9c14-49f7-bb1b-9608f156bbb8": "Helpdesk Administrator",
    "966707d0-3269-4727-9be2-8c3a10f19b9d": "Password Administrator",
    "9b895d92-2cd3-44c7-9d02-a6ac2d5ea5c3": "Application Administrator",
    "158c047a-c907-4556-b7ef-446551a6b5f7": "Cloud Application Administrator",
    "f28a1f50-f6e7-4571-818b-6a12f2af6b6c": "SharePoint Administrator",
    "29232cdf-9323-42fd-ade2-1d097af3e4de": "Exchange Administrator",
    "69091246-20e8-4a56-aa4d-066075b2a7a8": "Teams Administrator",
    "3a2c62db-5318-420d-8d74-23affee5d9d5": "Intune Administrator",
    "17315797-102d-40b4-93e0-432062caca18": "Compliance Administrator",
    "b0f54661-2d74-4c50-afa3-1ec803f12efe": "Billing Administrator",
    "4d6ac14f-3453-41d0-bef9-a3e0c569773a": "License Administrator",
    "88d8e3e3-8f55-4a1e-953a-9b9898b8876b": "Directory Readers",
    "9360feb5-f418-4baa-8175-e2a00bac4301": "Directory Writers",
    # Azure RBAC
    "8e3af657-a8ff-443c-a75c-2fe8c4bcb635": "Owner",
    "b24988ac-6180-42a0-ab88-20f7382dd24c": "Contributor",
    "acdd72a7-3385-48ef-bd42-f606fba81ae7": "Reader",
    "18d7d88d-d35e-4fb5-a5c3-7773c20a72d9": "User Access Administrator",
    "f58310d9-a9f6-439a-9e8d-f62e7b41a168": "Role Based Access Control Administrator",
}

# PIM for Groups uses these literal role ids; they have no definition entry
GROUP_ROLE_SENTINELS = {
    "owner": "Owner",
    "member": "Member",
}


def normalize_key(key: Optional[str]) -> str:
    return (key or "").strip().lower()


def trailing_guid(key: str) -> Optional[str]:
    """The GUID an id ends with: ARM role definition paths end in one."""
    tail = key.rstrip("/").rsplit("/", 1)[-1]
    return tail.lower() if GUID_RE.fullmatch(tail) else None


def is_arm_path(key: str) -> bool:
    return key.startswith("/subscriptions/") or key.startswith("/providers/")


def degraded_name(key: str) -> str:
    """Display value for an id no tier could name. Never empty."""
    key = key.strip()
    if not key:
        return "-"
    if len(key) > UNRESOLVED_MAX_LENGTH:
        return key[:UNRESOLVED_KEEP_CHARS] + "..."
    return key


def display_name_of(doc) -> Optional[str]:
    """Pull a display name out of a Graph or ARM object."""
    if not isinstance(doc, dict):
        return None
    props = doc.get("properties") if isinstance(doc.get("properties"), dict) else {}
    for value in (
        doc.get("displayName"),
        props.get("displayName"),
        props.get("roleName"),
        doc.get("roleName"),
    ):
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


class IdentifierResolver:
    """Resolves role, marker and group ids with a run-scoped, thread-safe cache."""

    def __init__(
        self,
        context: CorrelationContext,
        lookup=None,
        max_workers: int = RESOLVER_MAX_WORKERS,
    ):
        self.context = context
        self.lookup = lookup
        self.max_workers = max(1, max_workers)
        self.lookups_performed = 0
        self._known_markers: Dict[str, str] = {}
        self._known_groups: Dict[str, str] = {}
        self._lock = threading.Lock()
        self._inflight: Dict[str, threading.Event] = {}

    # ── Seeding from already-fetched collections ──────────────────────

    def seed_markers(self, markers: Iterable[dict]) -> None:
        for m in markers or []:
            if not isinstance(m, dict):
                continue
            mid = normalize_key(m.get("id"))
            name = m.get("displayName") or m.get("name")
            if mid and isinstance(name, str) and name.strip():
                self._known_markers[mid] = name.strip()

    def seed_groups(self, groups: Iterable[dict]) -> None:
        for g in groups or []:
            if not isinstance(g, dict):
                continue
            gid = normalize_key(g.get("id"))
            name = g.get("displayName")
            if gid and isinstance(name, str) and name.strip():
                self._known_groups[gid] = name.strip()

    # ── Public API ────────────────────────────────────────────────────

    def resolve_role_name(self, role_id: str) -> str:
        return self.resolve(KIND_ROLE, role_id).display_name

    def resolve_marker_name(self, marker_id: str) -> str:
        return self.resolve(KIND_MARKER, marker_id).display_name

    def resolve_group_name(self, group_id: str) -> str:
        return self.resolve(KIND_GROUP, group_id).display_name

    def resolve(self, kind: str, key: str) -> ResolvedName:
        key = (key or "").strip()
        norm = normalize_key(key)
        if not norm:
            return ResolvedName(key="", display_name="-", resolved_via=ResolvedVia.UNRESOLVED)

        with self._lock:
            hit = self.context.names.get(norm)
            if hit is not None:
                return replace(hit, resolved_via=ResolvedVia.CACHE)
            waiter = self._inflight.get(norm)
            owner = waiter is None
            if owner:
                waiter = threading.Event()
                self._inflight[norm] = waiter

        if not owner:
            # Another worker is resolving this key; reuse its answer
            waiter.wait()
            with self._lock:
                hit = self.context.names.get(norm)
            if hit is not None:
                return replace(hit, resolved_via=ResolvedVia.CACHE)
            return ResolvedName(key=key, display_name=degraded_name(key),
                                resolved_via=ResolvedVia.UNRESOLVED)

        try:
            resolved = self._resolve_uncached(kind, key, norm)
        except Exception as e:
            logger.warning("Resolver error for %s %s: %s", kind, key, e)
            resolved = self._unresolved(kind, key)
        with self._lock:
            self.context.names[norm] = resolved
            self._inflight.pop(norm, None)
        waiter.set()
        return resolved

    def resolve_many(self, kind: str, keys: Iterable[str]) -> Dict[str, ResolvedName]:
        """Resolve distinct *keys* concurrently. Returns {normalized key: ResolvedName}."""
        unique = {}
        for key in keys:
            norm = normalize_key(key)
            if norm and norm not in unique:
                unique[norm] = key.strip()
        if not unique:
            return {}

        if self.max_workers == 1 or len(unique) == 1:
            return {norm: self.resolve(kind, key) for norm, key in unique.items()}

        workers = min(self.max_workers, len(unique))
        with ThreadPoolExecutor(max_workers=workers) as ex:
            futures = {norm: ex.submit(self.resolve, kind, key) for norm, key in unique.items()}
            return {norm: fut.result() for norm, fut in futures.items()}

    # ── Tiers ─────────────────────────────────────────────────────────

    def _resolve_uncached(self, kind: str, key: str, norm: str) -> ResolvedName:
        if kind == KIND_ROLE:
            return self._resolve_role(key, norm)
        if kind == KIND_MARKER:
            return self._resolve_seeded(
                kind, key, self._known_markers.get(norm), "get_marker",
            )
        if kind == KIND_GROUP:
            return self._resolve_seeded(
                kind, key, self._known_groups.get(norm), "get_group",
            )
        raise ValueError(f"Unknown identifier kind: {kind}")

    def _resolve_role(self, key: str, norm: str) -> ResolvedName:
        if norm in GROUP_ROLE_SENTINELS:
            return ResolvedName(key, GROUP_ROLE_SENTINELS[norm], ResolvedVia.WELL_KNOWN)

        guid = trailing_guid(key)
        if guid and guid in WELL_KNOWN_ROLES:
            return ResolvedName(key, WELL_KNOWN_ROLES[guid], ResolvedVia.WELL_KNOWN)

        name = self._call("get_role_definition", key)
        if name:
            return ResolvedName(key, name, ResolvedVia.PRIMARY_ENDPOINT)

        # Template and active-instance stores only index directory roles
        if guid and not is_arm_path(key):
            name = self._call("get_role_template", guid)
            if name:
                return ResolvedName(key, name, ResolvedVia.TEMPLATE_ENDPOINT)

            name = self._call("find_active_role", guid)
            if name:
                return ResolvedName(key, name, ResolvedVia.FALLBACK_ENDPOINT)

        return self._unresolved(KIND_ROLE, key)

    def _resolve_seeded(self, kind: str, key: str, seeded: Optional[str], method: str) -> ResolvedName:
        if seeded:
            return ResolvedName(key, seeded, ResolvedVia.WELL_KNOWN)
        name = self._call(method, key)
        if name:
            return ResolvedName(key, name, ResolvedVia.PRIMARY_ENDPOINT)
        return self._unresolved(kind, key)

    def _call(self, method: str, arg: str) -> Optional[str]:
        """One network-backed tier. Errors count as a miss."""
        fn: Optional[Callable] = getattr(self.lookup, method, None) if self.lookup else None
        if fn is None:
            return None
        with self._lock:
            self.lookups_performed += 1
        try:
            doc = fn(arg)
        except Exception as e:
            self.context.diagnostics.record(ErrorKind.LOOKUP_FAILED, f"{method}({arg})", str(e))
            return None
        return display_name_of(doc)

    def _unresolved(self, kind: str, key: str) -> ResolvedName:
        self.context.diagnostics.record(ErrorKind.UNRESOLVED_IDENTIFIER, f"{kind}:{key}")
        return ResolvedName(key, degraded_name(key), ResolvedVia.UNRESOLVED)
