"""Tests for the authctx command line."""

import json
from unittest.mock import MagicMock, patch

import pytest
from click.testing import CliRunner
from rich.console import Console

from authctx_cli import __version__
from authctx_cli.cli import main
from authctx_cli.snapshot import TenantSnapshot


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture(autouse=True)
def no_configured_root(monkeypatch):
    monkeypatch.setattr("authctx_cli.pipeline.SHAREPOINT_ROOT_URL", "")


class TestInventoryOffline:
    def test_json_output(self, runner, snapshot_file):
        result = runner.invoke(main, ["inventory", "--input", str(snapshot_file), "--json"])
        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert len(data["domains"]) == 8
        sites = data["domains"]["Sites"]
        assert [s["Relation"] for s in sites] == ["InheritedViaLabel", "Direct", "InheritedViaGuess"]
        assert data["unavailable"] == []

    def test_json_domain_filter(self, runner, snapshot_file):
        result = runner.invoke(main, ["inventory", "-i", str(snapshot_file), "--json",
                                      "--domain", "groups", "--domain", "Sites"])
        assert result.exit_code == 0, result.output
        assert list(json.loads(result.output)["domains"]) == ["Groups", "Sites"]

    def test_table_output(self, runner, snapshot_file, monkeypatch):
        monkeypatch.setattr("authctx_cli.commands.inventory.console", Console(width=200))
        result = runner.invoke(main, ["inventory", "-i", str(snapshot_file), "--domain", "Sites"])
        assert result.exit_code == 0, result.output
        assert "InheritedViaGuess" in result.output
        assert "Finance" in result.output
        assert "Authentication Contexts" in result.output
        assert "Require MFA" not in result.output

    def test_placeholder_for_missing_domain(self, runner, tmp_path):
        path = tmp_path / "empty.json"
        path.write_text(json.dumps({"markers": []}), encoding="utf-8")
        result = runner.invoke(main, ["inventory", "-i", str(path), "--json"])
        data = json.loads(result.output)
        assert data["domains"]["Groups"][0]["Entity"] == "No data"
        assert len(data["unavailable"]) == 8
        assert data["diagnostics"]["counts"]["missing_collection"] == 8

    def test_report(self, runner, snapshot_file, tmp_path):
        report = tmp_path / "report.html"
        with patch("authctx_cli.report_builder.webbrowser.open") as browser:
            result = runner.invoke(main, ["inventory", "-i", str(snapshot_file), f"--report={report}"])
        assert result.exit_code == 0, result.output
        html = report.read_text(encoding="utf-8")
        assert "Authentication Context Inventory" in html
        assert "badge-guess" in html
        assert "Require MFA for sensitive data" in html
        browser.assert_called_once()

    def test_invalid_snapshot(self, runner, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text("{nope", encoding="utf-8")
        result = runner.invoke(main, ["inventory", "-i", str(path)])
        assert result.exit_code == 1
        assert "Error" in result.output

    def test_missing_snapshot_file(self, runner, tmp_path):
        result = runner.invoke(main, ["inventory", "-i", str(tmp_path / "absent.json")])
        assert result.exit_code == 2


class TestLiveCommands:
    def _connector(self, snapshot_data, status="complete"):
        connector = MagicMock()
        connector.collect.return_value = (
            TenantSnapshot.from_dict(snapshot_data),
            {"status": status, "apis_queried": ["groups"], "apis_failed": [], "permissions_missing": []},
        )
        connector.get_role_definition.return_value = None
        connector.confirm_site.return_value = None
        return connector

    def test_collect_writes_snapshot(self, runner, snapshot_data, tmp_path):
        out = tmp_path / "snap.json"
        connector = self._connector(snapshot_data)
        with patch("authctx_cli.commands.collect.get_connector", return_value=connector):
            result = runner.invoke(main, ["collect", "-y", "-o", str(out)])
        assert result.exit_code == 0, result.output
        connector.authenticate.assert_called_once()
        saved = json.loads(out.read_text(encoding="utf-8"))
        assert saved["markers"][0]["id"] == "c1"
        assert "Snapshot saved" in result.output

    def test_collect_failure_exits(self, runner, snapshot_data, tmp_path):
        connector = self._connector(snapshot_data, status="failed")
        with patch("authctx_cli.commands.collect.get_connector", return_value=connector):
            result = runner.invoke(main, ["collect", "-y", "-o", str(tmp_path / "x.json")])
        assert result.exit_code == 1
        assert not (tmp_path / "x.json").exists()

    def test_sign_in_failure(self, runner, snapshot_data):
        connector = self._connector(snapshot_data)
        connector.authenticate.side_effect = PermissionError("Sign-in failed: expired_token")
        with patch("authctx_cli.commands.collect.get_connector", return_value=connector):
            result = runner.invoke(main, ["collect", "-y"])
        assert result.exit_code == 1
        assert "Authentication failed" in result.output

    def test_live_inventory_uses_connector_for_lookups(self, runner, snapshot_data):
        connector = self._connector(snapshot_data)
        with patch("authctx_cli.commands.collect.get_connector", return_value=connector):
            result = runner.invoke(main, ["inventory", "-y", "--json"])
        assert result.exit_code == 0, result.output
        connector.collect.assert_called_once()
        data = json.loads(result.output[result.output.index("{"):])
        # the connector confirms guessed sites, and it finds none here
        assert [s["Relation"] for s in data["domains"]["Sites"]] == ["InheritedViaLabel", "Direct"]

    def test_declined_confirmation(self, runner, snapshot_data):
        connector = self._connector(snapshot_data)
        with patch("authctx_cli.commands.collect.get_connector", return_value=connector):
            result = runner.invoke(main, ["collect"], input="n\n")
        assert result.exit_code == 0
        connector.authenticate.assert_not_called()


def test_version(runner):
    result = runner.invoke(main, ["--version"])
    assert __version__ in result.output
