"""Shared fixtures: a small but complete tenant snapshot and fake lookups."""

import json
import threading
import time

import pytest

from authctx_cli.engine.correlation import CorrelationGraphBuilder
from authctx_cli.engine.extractor import RuleExtractor
from authctx_cli.engine.resolver import IdentifierResolver
from authctx_cli.models import CorrelationContext

GLOBAL_ADMIN = "62e90394-69f5-4237-9190-012177145e10"
AZURE_OWNER = "8e3af657-a8ff-443c-a75c-2fe8c4bcb635"
FINANCE_GROUP = "11111111-1111-1111-1111-111111111111"
LEGAL_GROUP = "22222222-2222-2222-2222-222222222222"
OPS_GROUP = "33333333-3333-3333-3333-333333333333"
CONFIDENTIAL_LABEL = "aaaaaaaa-0000-0000-0000-000000000001"
ROOT = "https://contoso.sharepoint.com"


def auth_context_rule(claim_value, enabled=True):
    """A PIM rule as Graph returns it: the context only appears as ``claimValue``."""
    return {
        "@odata.type": "#microsoft.graph.unifiedRoleManagementPolicyAuthenticationContextRule",
        "id": "AuthenticationContext_EndUser_Assignment",
        "isEnabled": enabled,
        "claimValue": claim_value,
    }


def expiration_rule():
    return {
        "@odata.type": "#microsoft.graph.unifiedRoleManagementPolicyExpirationRule",
        "id": "Expiration_EndUser_Assignment",
        "maximumDuration": "PT8H",
    }


@pytest.fixture
def snapshot_data():
    return {
        "tenant": {"id": "contoso", "sharePointRootUrl": ""},
        "markers": [
            {"id": "c1", "displayName": "Sensitive data", "isAvailable": True},
            {"id": "c2", "displayName": "Admin portals", "isAvailable": True},
            {"id": "c3", "displayName": "Unused", "isAvailable": False},
        ],
        "conditionalAccessPolicies": [
            {
                "id": "ca-1",
                "displayName": "Require MFA for sensitive data",
                "state": "enabled",
                "conditions": {
                    "applications": {"includeAuthenticationContextClassReferences": ["c1"]},
                },
            },
            {
                "id": "ca-2",
                "displayName": "Block legacy auth",
                "state": "enabled",
                "conditions": {"applications": {"includeApplications": ["All"]}},
            },
        ],
        "directoryRolePolicies": [
            {
                "id": "Directory_pol1_assignment",
                "policyId": "Directory_pol1",
                "scopeId": "/",
                "scopeType": "DirectoryRole",
                "roleDefinitionId": GLOBAL_ADMIN,
                "policy": {"rules": [expiration_rule(), auth_context_rule("c2")]},
            },
        ],
        "groupRolePolicies": [
            {
                "policyId": "Group_pol1",
                "scopeId": FINANCE_GROUP,
                "scopeType": "Group",
                "roleDefinitionId": "member",
                "policy": {"rules": [auth_context_rule("c1")]},
            },
        ],
        "azureResourcePolicies": [
            {
                "id": "/subscriptions/s1/providers/Microsoft.Authorization/roleManagementPolicyAssignments/a1",
                "properties": {
                    "scope": "/subscriptions/s1",
                    "roleDefinitionId": (
                        "/subscriptions/s1/providers/Microsoft.Authorization/roleDefinitions/" + AZURE_OWNER
                    ),
                    "policyId": "/subscriptions/s1/providers/Microsoft.Authorization/roleManagementPolicies/p1",
                    "effectiveRules": [
                        {
                            "id": "AuthenticationContext_EndUser_Assignment",
                            "ruleType": "RoleManagementPolicyAuthenticationContextRule",
                            "isEnabled": True,
                            "claimValue": "c2",
                        },
                    ],
                    "policyAssignmentProperties": {"roleDefinition": {"displayName": "Owner"}},
                },
            },
        ],
        "protectedActions": [
            {
                "id": "microsoft.directory-applications-credentials-update",
                "name": "microsoft.directory/applications/credentials/update",
                "isAuthenticationContextSettable": True,
                "authenticationContextId": "c2",
            },
        ],
        "sensitivityLabels": [
            {
                "id": CONFIDENTIAL_LABEL,
                "displayName": "Confidential",
                "settings": [
                    {"Key": "siteAccess", "Value": "restricted"},
                    {"Key": "authenticationContextId", "Value": "c1"},
                ],
            },
            {"id": "aaaaaaaa-0000-0000-0000-000000000002", "displayName": "Public"},
        ],
        "groups": [
            {
                "id": FINANCE_GROUP,
                "displayName": "Finance",
                "mailNickname": "finance",
                "assignedLabels": [{"labelId": CONFIDENTIAL_LABEL, "displayName": "Confidential"}],
            },
            {
                "id": LEGAL_GROUP,
                "displayName": "Legal",
                "mailNickname": "legal",
                "assignedLabels": [{"labelId": CONFIDENTIAL_LABEL, "displayName": "Confidential"}],
            },
            {"id": OPS_GROUP, "displayName": "Ops", "mailNickname": "ops", "assignedLabels": []},
        ],
        "sites": [
            {"webUrl": f"{ROOT}/sites/finance", "displayName": "Finance", "groupId": FINANCE_GROUP},
            {"webUrl": f"{ROOT}/sites/legal", "displayName": "Legal"},
            {"webUrl": f"{ROOT}/sites/hr", "displayName": "HR", "authenticationContextName": "Admin portals"},
        ],
    }


@pytest.fixture
def snapshot_file(tmp_path, snapshot_data):
    path = tmp_path / "snapshot.json"
    path.write_text(json.dumps(snapshot_data), encoding="utf-8")
    return path


@pytest.fixture
def context():
    return CorrelationContext()


@pytest.fixture
def resolver(context):
    return IdentifierResolver(context, max_workers=1)


@pytest.fixture
def builder(context, resolver):
    return CorrelationGraphBuilder(context, resolver, extractor=RuleExtractor(context), sharepoint_root=ROOT)


class FakeLookup:
    """Stands in for the connector's lookup methods, counting calls."""

    def __init__(self, roles=None, templates=None, active=None, markers=None, groups=None,
                 fail=(), delay=0.0):
        self.roles = roles or {}
        self.templates = templates or {}
        self.active = active or {}
        self.markers = markers or {}
        self.groups = groups or {}
        self.fail = set(fail)
        self.delay = delay
        self.calls = []
        self._lock = threading.Lock()

    def _answer(self, method, table, key):
        with self._lock:
            self.calls.append((method, key))
        if self.delay:
            time.sleep(self.delay)
        if method in self.fail:
            raise RuntimeError(f"{method} unavailable")
        name = table.get(key)
        return {"id": key, "displayName": name} if name else None

    def get_role_definition(self, key):
        return self._answer("get_role_definition", self.roles, key)

    def get_role_template(self, key):
        return self._answer("get_role_template", self.templates, key)

    def find_active_role(self, key):
        return self._answer("find_active_role", self.active, key)

    def get_marker(self, key):
        return self._answer("get_marker", self.markers, key)

    def get_group(self, key):
        return self._answer("get_group", self.groups, key)


@pytest.fixture
def fake_lookup():
    return FakeLookup
