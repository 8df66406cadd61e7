"""Tests for the tenant snapshot file format."""

import pytest

from authctx_cli.exceptions import SnapshotError
from authctx_cli.snapshot import TenantSnapshot, load_snapshot, save_snapshot


class TestFromDict:
    def test_missing_and_null_are_unavailable(self):
        snap = TenantSnapshot.from_dict({"markers": [], "groups": None})
        assert snap.markers == []
        assert snap.groups is None
        assert snap.sites is None
        assert snap.available()["markers"] is True
        assert snap.available()["groups"] is False

    def test_graph_page_is_unwrapped(self):
        snap = TenantSnapshot.from_dict({"sites": {"value": [{"webUrl": "https://x"}]}})
        assert snap.sites == [{"webUrl": "https://x"}]

    def test_non_list_collection_is_unavailable(self):
        assert TenantSnapshot.from_dict({"groups": "nope"}).groups is None

    def test_tenant_block(self):
        snap = TenantSnapshot.from_dict({
            "tenant": {"id": "t1", "sharePointRootUrl": "https://contoso.sharepoint.com"},
            "collectedAt": "2024-05-01T00:00:00+00:00",
        })
        assert snap.tenant_id == "t1"
        assert snap.sharepoint_root_url == "https://contoso.sharepoint.com"
        assert snap.collected_at.startswith("2024-05-01")

    def test_rejects_non_object(self):
        with pytest.raises(SnapshotError):
            TenantSnapshot.from_dict([1, 2])


class TestFiles:
    def test_save_then_load(self, tmp_path, snapshot_data):
        original = TenantSnapshot.from_dict(snapshot_data)
        path = save_snapshot(original, tmp_path / "out.json")
        loaded = load_snapshot(path)
        assert loaded.to_dict() == original.to_dict()

    def test_unavailable_survives_save(self, tmp_path):
        path = save_snapshot(TenantSnapshot(markers=[]), tmp_path / "s.json")
        loaded = load_snapshot(path)
        assert loaded.markers == []
        assert loaded.groups is None

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(SnapshotError, match="not valid JSON"):
            load_snapshot(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(SnapshotError, match="Cannot read"):
            load_snapshot(tmp_path / "absent.json")
