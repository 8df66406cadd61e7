"""
Microsoft connector for authentication context inventory.

Collects the raw per-domain collections the correlation engine needs, using
delegated permissions obtained via device code flow. The administrator signs
in once; MSAL handles multi-resource token acquisition automatically.

Collection layers:
  1. Authentication contexts   (Graph API)  the marker catalogue
  2. Conditional Access        (Graph API)  policies referencing contexts
  3. PIM directory roles       (Graph API)  role management policy rules
  4. PIM for Groups            (Graph API)  group-scoped policy rules
  5. Protected actions         (Graph beta) resource actions with contexts
  6. Sensitivity labels        (Graph beta) label settings
  7. Groups + sites            (Graph API)  label assignments, site links
  8. PIM Azure resources       (ARM API)    role management policy rules

The connector also answers the resolver's name lookups and confirms derived
SharePoint site addresses.
"""

import logging
import time
from typing import Callable, List, Optional, Tuple
from urllib.parse import quote, urlsplit

import msal
import requests

from ..config import (
    ARM_BASE,
    GRAPH_BASE,
    GROUP_POLICY_SCAN_LIMIT,
    LOGIN_AUTHORITY,
    MAX_RETRIES,
    REQUEST_TIMEOUT,
    RETRY_DELAY,
    TRANSIENT_CODES,
)
from ..exceptions import APIError, NotAuthenticatedError
from ..snapshot import TenantSnapshot

logger = logging.getLogger(__name__)

# ── Scopes ────────────────────────────────────────────────────────────────

GRAPH_SCOPES = [
    "https://graph.microsoft.com/Policy.Read.All",
    "https://graph.microsoft.com/RoleManagement.Read.Directory",
    "https://graph.microsoft.com/RoleManagementPolicy.Read.AzureADGroup",
    "https://graph.microsoft.com/Group.Read.All",
    "https://graph.microsoft.com/Sites.Read.All",
    "https://graph.microsoft.com/InformationProtectionPolicy.Read",
]

ARM_SCOPES = ["https://management.azure.com/user_impersonation"]

ARM_PIM_API_VERSION = "2020-10-01"
ARM_SUBSCRIPTIONS_API_VERSION = "2022-12-01"
ARM_ROLE_DEFINITION_API_VERSION = "2022-04-01"

# Permission each layer needs, reported when it fails with 401/403
LAYER_PERMISSIONS = {
    "authenticationContextClassReferences": "Policy.Read.All",
    "conditionalAccess/policies": "Policy.Read.All",
    "roleManagementPolicyAssignments/directory": "RoleManagement.Read.Directory",
    "roleManagementPolicyAssignments/group": "RoleManagementPolicy.Read.AzureADGroup",
    "resourceNamespaces/resourceActions": "RoleManagement.Read.Directory",
    "informationProtection/sensitivityLabels": "InformationProtectionPolicy.Read",
    "groups": "Group.Read.All",
    "sites": "Sites.Read.All",
    "roleManagementPolicyAssignments/azure": "Azure RBAC Reader role",
}


# ── Helpers ───────────────────────────────────────────────────────────────


def _check_response(resp: requests.Response):
    """Raise APIError for non-2xx responses (always captures body)."""
    if resp.status_code >= 400:
        raise APIError(resp.status_code, resp.text)


def _get_with_retry(session: requests.Session, url: str, **kwargs) -> requests.Response:
    """GET with retry on transient errors (429, 5xx)."""
    kwargs.setdefault("timeout", REQUEST_TIMEOUT)
    for attempt in range(MAX_RETRIES + 1):
        resp = session.get(url, **kwargs)
        if resp.status_code not in TRANSIENT_CODES or attempt == MAX_RETRIES:
            return resp
        retry_after = resp.headers.get("Retry-After", "")
        delay = int(retry_after) if retry_after.isdigit() else RETRY_DELAY * (attempt + 1)
        logger.info("Transient %s on %s, retrying in %ss...", resp.status_code, url.split("?")[0], delay)
        time.sleep(delay)
    return resp


def _get_json(session: requests.Session, url: str) -> dict:
    resp = _get_with_retry(session, url)
    _check_response(resp)
    return resp.json()


def _get_optional(session: requests.Session, url: str) -> Optional[dict]:
    """GET one object; 404 means it does not exist and returns None."""
    resp = _get_with_retry(session, url)
    if resp.status_code == 404:
        return None
    _check_response(resp)
    return resp.json()


def _paginate(session: requests.Session, url: str, max_pages: Optional[int] = None) -> List[dict]:
    """Follow ``@odata.nextLink`` (Graph) or ``nextLink`` (ARM) until exhausted."""
    items = []
    pages = 0
    while url:
        data = _get_json(session, url)
        items.extend(data.get("value", []))
        pages += 1
        if max_pages is not None and pages >= max_pages:
            break
        url = data.get("@odata.nextLink") or data.get("nextLink")
    return items


def _odata_quote(value: str) -> str:
    return value.replace("'", "''")


# ── Connector ─────────────────────────────────────────────────────────────


class MicrosoftConnector:
    """Collects authentication context data from a Microsoft tenant via device code flow."""

    def __init__(self, client_id: str):
        self.client_id = client_id
        self._graph_session = None
        self._arm_session = None
        self._raw_responses = {}  # layer_name → item count

        self._msal_app = msal.PublicClientApplication(
            self.client_id,
            authority=LOGIN_AUTHORITY,
        )

    def authenticate(self, callback: Optional[Callable[[dict], None]] = None):
        """Device code flow: the user signs in via browser.

        After Graph auth, silently acquires ARM token using cached refresh token.
        """
        flow = self._msal_app.initiate_device_flow(scopes=GRAPH_SCOPES)
        if "user_code" not in flow:
            raise PermissionError(
                f"Device code flow failed: {flow.get('error_description', 'Unknown error')}"
            )

        if callback:
            callback(flow)

        result = self._msal_app.acquire_token_by_device_flow(flow)
        if "access_token" not in result:
            error_desc = result.get("error_description", result.get("error", "Unknown"))
            raise PermissionError(f"Sign-in failed: {error_desc}")

        self._graph_session = requests.Session()
        self._graph_session.headers.update({
            "Authorization": f"Bearer {result['access_token']}",
            "Content-Type": "application/json",
        })

        # Try to get ARM token silently (uses cached refresh token)
        self._init_arm_session()

        return flow

    def _init_arm_session(self):
        """Acquire ARM API token using MSAL token cache."""
        accounts = self._msal_app.get_accounts()
        if not accounts:
            return

        result = self._msal_app.acquire_token_silent(ARM_SCOPES, account=accounts[0])
        if result and "access_token" in result:
            self._arm_session = requests.Session()
            self._arm_session.headers.update({
                "Authorization": f"Bearer {result['access_token']}",
                "Content-Type": "application/json",
            })
        else:
            logger.info("Could not acquire ARM token, Azure resource policies skipped")

    # ── Collection ─────────────────────────────────────────────────────

    def collect(self) -> Tuple[TenantSnapshot, dict]:
        """Run all collection layers and return (snapshot, metadata).

        A failed layer leaves its collection as None so the engine can tell
        "unavailable" from "empty".
        """
        if not self._graph_session:
            raise NotAuthenticatedError("Not authenticated. Call authenticate() first.")

        apis_queried = []
        apis_failed = []
        permissions_missing = []
        snapshot = TenantSnapshot()

        def run_layer(name: str, fn: Callable[[], list]) -> Optional[list]:
            try:
                items = fn()
            except APIError as e:
                apis_failed.append(name)
                if e.is_auth_error():
                    permissions_missing.append(LAYER_PERMISSIONS.get(name, name))
                logger.warning("%s query failed: %s", name, e)
                return None
            except requests.RequestException as e:
                apis_failed.append(name)
                logger.warning("%s query failed: %s", name, e)
                return None
            apis_queried.append(name)
            self._raw_responses[name] = len(items)
            logger.info("%s: %d item(s)", name, len(items))
            return items

        # ── Layer 1: Authentication contexts ───────────────────────────
        snapshot.markers = run_layer("authenticationContextClassReferences", self._query_markers)

        # ── Layer 2: Conditional Access ────────────────────────────────
        snapshot.conditional_access_policies = run_layer(
            "conditionalAccess/policies", self._query_conditional_access,
        )

        # ── Layer 3: PIM directory roles ───────────────────────────────
        snapshot.directory_role_policies = run_layer(
            "roleManagementPolicyAssignments/directory", self._query_directory_role_policies,
        )

        # ── Layer 5: Protected actions ─────────────────────────────────
        snapshot.protected_actions = run_layer(
            "resourceNamespaces/resourceActions", self._query_protected_actions,
        )

        # ── Layer 6: Sensitivity labels ────────────────────────────────
        snapshot.sensitivity_labels = run_layer(
            "informationProtection/sensitivityLabels", self._query_sensitivity_labels,
        )

        # ── Layer 7: Groups + sites ────────────────────────────────────
        snapshot.groups = run_layer("groups", self._query_groups)
        snapshot.sites = run_layer("sites", self._query_sites)
        if snapshot.groups and snapshot.sites is not None:
            self._link_group_sites(snapshot.groups, snapshot.sites)
        snapshot.sharepoint_root_url = self._query_sharepoint_root()

        # ── Layer 4: PIM for Groups (needs the group list) ─────────────
        if snapshot.groups is not None:
            snapshot.group_role_policies = run_layer(
                "roleManagementPolicyAssignments/group",
                lambda: self._query_group_role_policies(snapshot.groups),
            )
        else:
            apis_failed.append("roleManagementPolicyAssignments/group (no groups)")

        # ── Layer 8: PIM Azure resources (ARM) ─────────────────────────
        if self._arm_session:
            snapshot.azure_resource_policies = run_layer(
                "roleManagementPolicyAssignments/azure", self._query_azure_resource_policies,
            )
        else:
            apis_failed.append("roleManagementPolicyAssignments/azure (no token)")

        if not apis_queried:
            status = "failed"
        elif apis_failed:
            status = "partial"
        else:
            status = "complete"

        metadata = {
            "status": status,
            "apis_queried": apis_queried,
            "apis_failed": apis_failed,
            "permissions_missing": sorted(set(permissions_missing)),
            "item_counts": dict(self._raw_responses),
        }
        return snapshot, metadata

    # ── Graph API queries ──────────────────────────────────────────────

    def _query_markers(self) -> list:
        """Layer 1: authentication context class references."""
        url = (
            f"{GRAPH_BASE}/v1.0/identity/conditionalAccess/authenticationContextClassReferences"
            "?$select=id,displayName,description,isAvailable"
        )
        return _paginate(self._graph_session, url)

    def _query_conditional_access(self) -> list:
        """Layer 2: Conditional Access policies (full documents)."""
        url = f"{GRAPH_BASE}/v1.0/identity/conditionalAccess/policies"
        return _paginate(self._graph_session, url)

    def _query_directory_role_policies(self) -> list:
        """Layer 3: directory-wide PIM policy assignments with their rules expanded."""
        url = (
            f"{GRAPH_BASE}/v1.0/policies/roleManagementPolicyAssignments"
            "?$filter=scopeId eq '/' and scopeType eq 'DirectoryRole'"
            "&$expand=policy($expand=rules)"
        )
        return _paginate(self._graph_session, url)

    def _query_group_role_policies(self, groups: list) -> list:
        """Layer 4: PIM for Groups policies.

        Graph only lists these per group, so the scan is capped at
        GROUP_POLICY_SCAN_LIMIT groups. Groups that are not PIM-onboarded
        return an empty list.
        """
        assignments = []
        for group in groups[:GROUP_POLICY_SCAN_LIMIT]:
            gid = group.get("id")
            if not gid:
                continue
            url = (
                f"{GRAPH_BASE}/v1.0/policies/roleManagementPolicyAssignments"
                f"?$filter=scopeId eq '{_odata_quote(gid)}' and scopeType eq 'Group'"
                "&$expand=policy($expand=rules)"
            )
            try:
                assignments.extend(_paginate(self._graph_session, url))
            except APIError as e:
                if e.is_auth_error():
                    raise
                logger.info("Group policy query failed for %s (HTTP %s)", gid, e.status_code)
        if len(groups) > GROUP_POLICY_SCAN_LIMIT:
            logger.info("PIM for Groups scan capped at %d of %d groups",
                        GROUP_POLICY_SCAN_LIMIT, len(groups))
        return assignments

    def _query_protected_actions(self) -> list:
        """Layer 5: resource actions that can carry an authentication context."""
        url = (
            f"{GRAPH_BASE}/beta/roleManagement/directory/resourceNamespaces/microsoft.directory"
            "/resourceActions?$filter=isAuthenticationContextSettable eq true"
            "&$select=id,name,description,isAuthenticationContextSettable,authenticationContextId"
        )
        return _paginate(self._graph_session, url)

    def _query_sensitivity_labels(self) -> list:
        """Layer 6: sensitivity labels, including site and group protection settings."""
        url = f"{GRAPH_BASE}/beta/security/informationProtection/sensitivityLabels"
        return _paginate(self._graph_session, url)

    def _query_groups(self) -> list:
        """Layer 7a: Microsoft 365 groups with their assigned labels."""
        url = (
            f"{GRAPH_BASE}/v1.0/groups"
            "?$filter=groupTypes/any(c:c eq 'Unified')"
            "&$select=id,displayName,mailNickname,assignedLabels&$top=999"
        )
        return _paginate(self._graph_session, url)

    def _query_sites(self) -> list:
        """Layer 7b: SharePoint sites visible to the signed-in administrator."""
        url = f"{GRAPH_BASE}/v1.0/sites?search=*&$select=id,displayName,webUrl,name&$top=999"
        return _paginate(self._graph_session, url)

    def _query_sharepoint_root(self) -> str:
        try:
            data = _get_json(self._graph_session, f"{GRAPH_BASE}/v1.0/sites/root?$select=webUrl")
        except (APIError, requests.RequestException) as e:
            logger.info("SharePoint root lookup failed: %s", e)
            return ""
        parts = urlsplit(data.get("webUrl", ""))
        return f"{parts.scheme}://{parts.netloc}" if parts.scheme and parts.netloc else ""

    def _link_group_sites(self, groups: list, sites: list):
        """Stamp ``groupId`` on the sites owned by labelled groups.

        Only groups with an assigned label can contribute an inherited
        relation, so only those are looked up.
        """
        by_url = {}
        for site in sites:
            url = (site.get("webUrl") or "").rstrip("/").lower()
            if url:
                by_url[url] = site

        for group in groups:
            if not group.get("assignedLabels"):
                continue
            gid = group.get("id", "")
            try:
                data = _get_optional(
                    self._graph_session,
                    f"{GRAPH_BASE}/v1.0/groups/{gid}/sites/root?$select=id,displayName,webUrl",
                )
            except (APIError, requests.RequestException) as e:
                logger.info("Group site lookup failed for %s: %s", gid, e)
                continue
            if not data:
                continue
            url = (data.get("webUrl") or "").rstrip("/").lower()
            site = by_url.get(url)
            if site is None:
                site = {"id": data.get("id"), "displayName": data.get("displayName"),
                        "webUrl": data.get("webUrl")}
                sites.append(site)
                by_url[url] = site
            site["groupId"] = gid

    # ── ARM API queries ────────────────────────────────────────────────

    def _query_azure_resource_policies(self) -> list:
        """Layer 8: PIM policy assignments for every visible subscription."""
        url = f"{ARM_BASE}/subscriptions?api-version={ARM_SUBSCRIPTIONS_API_VERSION}"
        subscriptions = _paginate(self._arm_session, url)

        assignments = []
        for sub in subscriptions:
            sub_id = sub.get("subscriptionId", "")
            if not sub_id:
                continue
            url = (
                f"{ARM_BASE}/subscriptions/{sub_id}/providers/Microsoft.Authorization"
                f"/roleManagementPolicyAssignments?api-version={ARM_PIM_API_VERSION}"
            )
            try:
                assignments.extend(_paginate(self._arm_session, url))
            except APIError as e:
                logger.info("PIM policy query failed for subscription %s (HTTP %s)", sub_id, e.status_code)
        return assignments

    # ── Resolver lookups ───────────────────────────────────────────────
    # Each returns the raw object or None when it does not exist; other
    # failures raise and the resolver falls through to its next tier.

    def get_role_definition(self, role_id: str) -> Optional[dict]:
        if role_id.startswith("/subscriptions/") or role_id.startswith("/providers/"):
            if not self._arm_session:
                return None
            url = f"{ARM_BASE}{role_id}?api-version={ARM_ROLE_DEFINITION_API_VERSION}"
            return _get_optional(self._arm_session, url)
        self._require_graph()
        url = f"{GRAPH_BASE}/v1.0/roleManagement/directory/roleDefinitions/{quote(role_id)}"
        return _get_optional(self._graph_session, url)

    def get_role_template(self, template_id: str) -> Optional[dict]:
        self._require_graph()
        url = f"{GRAPH_BASE}/v1.0/directoryRoleTemplates/{quote(template_id)}"
        return _get_optional(self._graph_session, url)

    def find_active_role(self, template_id: str) -> Optional[dict]:
        self._require_graph()
        url = (
            f"{GRAPH_BASE}/v1.0/directoryRoles"
            f"?$filter=roleTemplateId eq '{_odata_quote(template_id)}'"
        )
        roles = _get_json(self._graph_session, url).get("value", [])
        return roles[0] if roles else None

    def get_marker(self, marker_id: str) -> Optional[dict]:
        self._require_graph()
        url = (
            f"{GRAPH_BASE}/v1.0/identity/conditionalAccess"
            f"/authenticationContextClassReferences/{quote(marker_id)}"
        )
        return _get_optional(self._graph_session, url)

    def get_group(self, group_id: str) -> Optional[dict]:
        self._require_graph()
        url = f"{GRAPH_BASE}/v1.0/groups/{quote(group_id)}?$select=id,displayName"
        return _get_optional(self._graph_session, url)

    def confirm_site(self, site_url: str) -> Optional[dict]:
        """Return the site at *site_url* if it exists, else None."""
        self._require_graph()
        parts = urlsplit(site_url)
        if not parts.netloc:
            return None
        url = f"{GRAPH_BASE}/v1.0/sites/{parts.netloc}:{parts.path or '/'}?$select=id,displayName,webUrl"
        return _get_optional(self._graph_session, url)

    def _require_graph(self):
        if not self._graph_session:
            raise NotAuthenticatedError("Not authenticated. Call authenticate() first.")
