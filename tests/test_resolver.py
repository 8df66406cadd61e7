"""Tests for identifier → display name resolution."""

import threading

import pytest

from authctx_cli.engine.resolver import (
    KIND_GROUP,
    KIND_MARKER,
    KIND_ROLE,
    IdentifierResolver,
    degraded_name,
    display_name_of,
    trailing_guid,
)
from authctx_cli.models import CorrelationContext, ErrorKind, ResolvedVia

from conftest import AZURE_OWNER, GLOBAL_ADMIN

CUSTOM_ROLE = "0f0f0f0f-aaaa-bbbb-cccc-ddddeeeeffff"


class TestRoleTiers:
    def test_well_known_without_network(self, context, fake_lookup):
        lookup = fake_lookup()
        resolver = IdentifierResolver(context, lookup=lookup)
        name = resolver.resolve(KIND_ROLE, GLOBAL_ADMIN.upper())
        assert name.display_name == "Global Administrator"
        assert name.resolved_via == ResolvedVia.WELL_KNOWN
        assert lookup.calls == []

    def test_arm_path_uses_trailing_guid(self, resolver):
        path = f"/subscriptions/s1/providers/Microsoft.Authorization/roleDefinitions/{AZURE_OWNER}"
        assert resolver.resolve_role_name(path) == "Owner"

    @pytest.mark.parametrize("sentinel,expected", [("member", "Member"), ("Owner", "Owner")])
    def test_group_sentinels(self, resolver, sentinel, expected):
        assert resolver.resolve_role_name(sentinel) == expected

    def test_primary_endpoint(self, context, fake_lookup):
        lookup = fake_lookup(roles={CUSTOM_ROLE: "Custom Auditor"})
        resolved = IdentifierResolver(context, lookup=lookup).resolve(KIND_ROLE, CUSTOM_ROLE)
        assert resolved.display_name == "Custom Auditor"
        assert resolved.resolved_via == ResolvedVia.PRIMARY_ENDPOINT

    def test_template_then_active_role(self, context, fake_lookup):
        lookup = fake_lookup(active={CUSTOM_ROLE: "Activated Role"})
        resolved = IdentifierResolver(context, lookup=lookup).resolve(KIND_ROLE, CUSTOM_ROLE)
        assert resolved.display_name == "Activated Role"
        assert resolved.resolved_via == ResolvedVia.FALLBACK_ENDPOINT
        assert [m for m, _ in lookup.calls] == ["get_role_definition", "get_role_template", "find_active_role"]

    def test_template_endpoint(self, context, fake_lookup):
        lookup = fake_lookup(templates={CUSTOM_ROLE: "Template Role"})
        resolved = IdentifierResolver(context, lookup=lookup).resolve(KIND_ROLE, CUSTOM_ROLE)
        assert resolved.resolved_via == ResolvedVia.TEMPLATE_ENDPOINT

    def test_arm_path_skips_directory_tiers(self, context, fake_lookup):
        lookup = fake_lookup()
        path = f"/subscriptions/s1/providers/Microsoft.Authorization/roleDefinitions/{CUSTOM_ROLE}"
        IdentifierResolver(context, lookup=lookup).resolve(KIND_ROLE, path)
        assert [m for m, _ in lookup.calls] == ["get_role_definition"]

    def test_failing_lookup_falls_through(self, context, fake_lookup):
        lookup = fake_lookup(templates={CUSTOM_ROLE: "Template Role"}, fail={"get_role_definition"})
        resolved = IdentifierResolver(context, lookup=lookup).resolve(KIND_ROLE, CUSTOM_ROLE)
        assert resolved.display_name == "Template Role"
        assert context.diagnostics.count(ErrorKind.LOOKUP_FAILED) == 1


class TestUnresolved:
    def test_long_id_is_truncated(self, resolver, context):
        resolved = resolver.resolve(KIND_ROLE, CUSTOM_ROLE)
        assert resolved.display_name == "0f0f0f0f..."
        assert resolved.resolved_via == ResolvedVia.UNRESOLVED
        assert context.diagnostics.count(ErrorKind.UNRESOLVED_IDENTIFIER) == 1

    def test_short_id_kept(self, resolver):
        assert resolver.resolve_marker_name("c7") == "c7"

    def test_empty_key(self, resolver, context):
        assert resolver.resolve(KIND_GROUP, "  ").display_name == "-"
        assert len(context.diagnostics) == 0

    def test_unknown_kind_degrades(self, resolver):
        resolved = resolver.resolve("device", "abc")
        assert resolved.resolved_via == ResolvedVia.UNRESOLVED

    def test_degraded_name(self):
        assert degraded_name("") == "-"
        assert degraded_name("short") == "short"
        assert degraded_name("x" * 13) == "xxxxxxxx..."


class TestSeededKinds:
    def test_markers_from_catalogue(self, resolver):
        resolver.seed_markers([{"id": "C1", "displayName": "Sensitive data"}, "junk"])
        resolved = resolver.resolve(KIND_MARKER, "c1")
        assert resolved.display_name == "Sensitive data"
        assert resolved.resolved_via == ResolvedVia.WELL_KNOWN

    def test_groups_from_snapshot_then_endpoint(self, context, fake_lookup):
        lookup = fake_lookup(groups={"g-2": "Remote Group"})
        resolver = IdentifierResolver(context, lookup=lookup)
        resolver.seed_groups([{"id": "g-1", "displayName": "Local Group"}])
        assert resolver.resolve_group_name("g-1") == "Local Group"
        assert resolver.resolve_group_name("g-2") == "Remote Group"
        assert lookup.calls == [("get_group", "g-2")]


class TestCache:
    def test_idempotent(self, context, fake_lookup):
        lookup = fake_lookup(roles={CUSTOM_ROLE: "Custom Auditor"})
        resolver = IdentifierResolver(context, lookup=lookup)
        first = resolver.resolve(KIND_ROLE, CUSTOM_ROLE)
        second = resolver.resolve(KIND_ROLE, CUSTOM_ROLE.upper())
        assert first.display_name == second.display_name
        assert second.resolved_via == ResolvedVia.CACHE
        assert resolver.lookups_performed == 1

    def test_unresolved_is_cached_too(self, context, fake_lookup):
        lookup = fake_lookup()
        resolver = IdentifierResolver(context, lookup=lookup)
        resolver.resolve(KIND_GROUP, "missing-group-id")
        resolver.resolve(KIND_GROUP, "missing-group-id")
        assert len(lookup.calls) == 1
        assert context.diagnostics.count(ErrorKind.UNRESOLVED_IDENTIFIER) == 1

    def test_cache_lives_in_context(self, fake_lookup):
        context = CorrelationContext()
        IdentifierResolver(context).resolve(KIND_ROLE, GLOBAL_ADMIN)
        assert GLOBAL_ADMIN in context.names


class TestConcurrency:
    def test_same_key_looked_up_once(self, context, fake_lookup):
        lookup = fake_lookup(roles={CUSTOM_ROLE: "Custom Auditor"}, delay=0.05)
        resolver = IdentifierResolver(context, lookup=lookup)
        results = []

        def worker():
            results.append(resolver.resolve(KIND_ROLE, CUSTOM_ROLE).display_name)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results == ["Custom Auditor"] * 8
        assert lookup.calls == [("get_role_definition", CUSTOM_ROLE)]

    def test_resolve_many(self, context, fake_lookup):
        roles = {f"{i:08d}-0000-0000-0000-000000000000": f"Role {i}" for i in range(10)}
        lookup = fake_lookup(roles=roles, delay=0.01)
        resolver = IdentifierResolver(context, lookup=lookup, max_workers=4)
        keys = list(roles) + [k.upper() for k in roles]
        resolved = resolver.resolve_many(KIND_ROLE, keys)
        assert len(resolved) == 10
        assert {r.display_name for r in resolved.values()} == set(roles.values())
        assert len(lookup.calls) == 10

    def test_one_failure_does_not_cancel_batch(self, context, fake_lookup):
        lookup = fake_lookup(groups={"g-1": "One"})
        resolver = IdentifierResolver(context, lookup=lookup, max_workers=4)
        resolved = resolver.resolve_many(KIND_GROUP, ["g-1", "g-2", "g-3"])
        assert resolved["g-1"].display_name == "One"
        assert resolved["g-2"].resolved_via == ResolvedVia.UNRESOLVED


class TestHelpers:
    def test_trailing_guid(self):
        assert trailing_guid(f"/a/b/{AZURE_OWNER.upper()}") == AZURE_OWNER
        assert trailing_guid("/a/b/not-a-guid") is None

    def test_display_name_of(self):
        assert display_name_of({"displayName": "A"}) == "A"
        assert display_name_of({"properties": {"roleName": "B"}}) == "B"
        assert display_name_of({"displayName": " "}) is None
        assert display_name_of(None) is None
