"""
Unit tests for the command-line interface.
"""

import json

from click.testing import CliRunner

from webhook_forwarder.main import cli


class TestInit:
    """Test configuration scaffolding."""

    def test_creates_config(self, tmp_path):
        path = tmp_path / "forwarder.json"

        result = CliRunner().invoke(cli, ["init", "--config", str(path)])

        assert result.exit_code == 0
        assert "Created configuration file" in result.output
        data = json.loads(path.read_text())
        assert data["delivery_rules"] == [{"source": "*", "destination": "local"}]

    def test_keeps_existing_config_without_confirmation(self, tmp_path):
        path = tmp_path / "forwarder.json"
        path.write_text("{}")

        result = CliRunner().invoke(cli, ["init", "--config", str(path)], input="n\n")

        assert result.exit_code == 0
        assert path.read_text() == "{}"


class TestServe:
    """Test startup validation."""

    def test_requires_webhook_id(self, tmp_path, monkeypatch):
        monkeypatch.delenv("WEBHOOK_FORWARDER_WEBHOOK_ID", raising=False)
        path = tmp_path / "forwarder.json"
        path.write_text(json.dumps({"broker": {"webhook_id": ""}}))

        result = CliRunner().invoke(cli, ["serve", "--config", str(path), "--console-logs"])

        assert result.exit_code == 1

    def test_invalid_config(self, tmp_path):
        path = tmp_path / "forwarder.json"
        path.write_text("{broken")

        result = CliRunner().invoke(cli, ["serve", "--config", str(path)])

        assert result.exit_code == 1
        assert "Configuration error" in result.output
