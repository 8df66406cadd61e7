"""Raw tenant snapshot: the per-domain collections the engine correlates.

A collection that is ``None`` was not available (API failed, permission
missing, domain not connected). An empty list means the collection was
fetched and is empty. The distinction drives the "no data" diagnostics.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from .exceptions import SnapshotError

logger = logging.getLogger(__name__)

# JSON key → attribute name
SNAPSHOT_KEYS = {
    "markers": "markers",
    "directoryRolePolicies": "directory_role_policies",
    "groupRolePolicies": "group_role_policies",
    "azureResourcePolicies": "azure_resource_policies",
    "conditionalAccessPolicies": "conditional_access_policies",
    "protectedActions": "protected_actions",
    "sensitivityLabels": "sensitivity_labels",
    "groups": "groups",
    "sites": "sites",
}


@dataclass
class TenantSnapshot:
    markers: Optional[List[dict]] = None
    directory_role_policies: Optional[List[dict]] = None
    group_role_policies: Optional[List[dict]] = None
    azure_resource_policies: Optional[List[dict]] = None
    conditional_access_policies: Optional[List[dict]] = None
    protected_actions: Optional[List[dict]] = None
    sensitivity_labels: Optional[List[dict]] = None
    groups: Optional[List[dict]] = None
    sites: Optional[List[dict]] = None
    sharepoint_root_url: str = ""
    tenant_id: str = ""
    collected_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @classmethod
    def from_dict(cls, data: dict) -> "TenantSnapshot":
        if not isinstance(data, dict):
            raise SnapshotError(f"Snapshot must be a JSON object, got {type(data).__name__}")

        kwargs = {}
        for key, attr in SNAPSHOT_KEYS.items():
            kwargs[attr] = _collection(key, data.get(key))

        tenant = data.get("tenant") or {}
        if isinstance(tenant, dict):
            kwargs["sharepoint_root_url"] = tenant.get("sharePointRootUrl", "") or ""
            kwargs["tenant_id"] = tenant.get("id", "") or ""
        if data.get("collectedAt"):
            kwargs["collected_at"] = str(data["collectedAt"])
        return cls(**kwargs)

    def to_dict(self) -> dict:
        out = {key: getattr(self, attr) for key, attr in SNAPSHOT_KEYS.items()}
        out["tenant"] = {"id": self.tenant_id, "sharePointRootUrl": self.sharepoint_root_url}
        out["collectedAt"] = self.collected_at
        return out

    def available(self) -> Dict[str, bool]:
        """Which collections were fetched, keyed by JSON name."""
        return {key: getattr(self, attr) is not None for key, attr in SNAPSHOT_KEYS.items()}


def _collection(key: str, raw) -> Optional[List[dict]]:
    """Accept a plain list or a Graph page ({"value": [...]}); anything else is unavailable."""
    if raw is None:
        return None
    if isinstance(raw, dict) and isinstance(raw.get("value"), list):
        raw = raw["value"]
    if not isinstance(raw, list):
        logger.warning("Snapshot collection %s is not a list (%s), treated as unavailable",
                       key, type(raw).__name__)
        return None
    return raw


def load_snapshot(path) -> TenantSnapshot:
    """Read a snapshot written by ``authctx collect`` (or assembled by hand)."""
    p = Path(path)
    try:
        data = json.loads(p.read_text(encoding="utf-8"))
    except OSError as e:
        raise SnapshotError(f"Cannot read snapshot {p}: {e}") from e
    except ValueError as e:
        raise SnapshotError(f"Snapshot {p} is not valid JSON: {e}") from e
    return TenantSnapshot.from_dict(data)


def save_snapshot(snapshot: TenantSnapshot, path) -> str:
    """Write *snapshot* as JSON. Returns the absolute path written."""
    p = Path(path).resolve()
    try:
        p.write_text(json.dumps(snapshot.to_dict(), indent=2, default=str), encoding="utf-8")
    except OSError as e:
        raise SnapshotError(f"Cannot write snapshot {p}: {e}") from e
    return str(p)
