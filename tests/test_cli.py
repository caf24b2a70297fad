"""Tests for CLI commands.

These tests verify that all CLI commands are properly registered and callable.
"""

import json
from unittest.mock import patch

import pytest
import yaml

from invoice_intake.runner.main import create_cli, main
from invoice_intake.state_store import AlertSeverity, AlertType, StateStore


@pytest.fixture
def cli_config(tmp_path, temp_db):
    """Config file pointing at a temporary state database."""
    path = tmp_path / "config.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "extraction": {"api_key": "test-key"},
                "state_db_path": str(temp_db),
            }
        )
    )
    return path


def run_cli(cli_config, *args) -> int:
    return main(["-c", str(cli_config), *args])


class TestCLICommandRegistry:
    """Tests for CLI command registration."""

    def test_all_commands_registered(self):
        """Verify all expected commands are registered."""
        parser = create_cli()

        subparsers_action = None
        for action in parser._actions:
            if action.dest == "command":
                subparsers_action = action
                break

        assert subparsers_action is not None
        commands = set(subparsers_action.choices.keys())
        assert commands == {
            "init",
            "add-tenant",
            "add-connection",
            "process",
            "poll",
            "health-check",
            "daemon",
            "retry-dead-letter",
            "ack-alert",
            "status",
        }

    def test_retry_accepts_repeated_lease_ids(self):
        """retry-dead-letter should collect repeated --lease-id values."""
        args = create_cli().parse_args(["retry-dead-letter", "--lease-id", "3", "--lease-id", "7"])
        assert args.lease_ids == [3, 7]
        assert args.tenant is None

    def test_retry_requires_a_target(self):
        """retry-dead-letter needs --lease-id or --tenant."""
        with pytest.raises(SystemExit):
            create_cli().parse_args(["retry-dead-letter"])

    def test_retry_targets_are_exclusive(self):
        with pytest.raises(SystemExit):
            create_cli().parse_args(["retry-dead-letter", "--lease-id", "1", "--tenant", "1"])

    def test_no_command_prints_help(self, capsys):
        assert main([]) == 1
        assert "usage: invoice-intake" in capsys.readouterr().out


class TestCLICommands:
    """Tests for running commands against a temporary database."""

    def test_init(self, tmp_path, monkeypatch, capsys):
        config_path = tmp_path / "conf" / "config.yaml"
        monkeypatch.setenv("INTAKE_STATE_DB", str(tmp_path / "init.db"))

        assert main(["-c", str(config_path), "init"]) == 0

        assert config_path.exists()
        assert (tmp_path / "init.db").exists()
        assert "State database ready" in capsys.readouterr().out

    def test_add_tenant_and_connection(self, cli_config, temp_db, tmp_path, capsys):
        assert run_cli(cli_config, "add-tenant", "Harbour Accounting") == 0
        assert "Tenant 1 created" in capsys.readouterr().out

        assert run_cli(
            cli_config, "add-connection", "--tenant", "1", "--name", "inbox", "--uri", str(tmp_path)
        ) == 0

        connection = StateStore(temp_db).list_connections(1)[0]
        assert connection.name == "inbox"
        assert connection.source_type == "eml_dir"

    def test_add_connection_unknown_tenant(self, cli_config, capsys):
        code = run_cli(cli_config, "add-connection", "--tenant", "42", "--name", "x", "--uri", "/tmp")
        assert code == 1
        assert "Unknown tenant 42" in capsys.readouterr().out

    def test_process(self, cli_config, store, tenant_id, extraction_client, tmp_path, sample_eml, capsys):
        eml = tmp_path / "inv.eml"
        eml.write_bytes(sample_eml)

        with patch("invoice_intake.runner.main.ExtractionClient", return_value=extraction_client):
            code = run_cli(cli_config, "process", str(eml), "--tenant", str(tenant_id))

        assert code == 0
        output = json.loads(capsys.readouterr().out)
        assert output["status"] == "completed"
        assert store.get_invoice(tenant_id, output["invoice_id"]).source_item_id == "inv.eml"
        extraction_client.close.assert_called_once()

    def test_process_failure_exit_code(self, cli_config, tenant_id, extraction_client, tmp_path, sample_eml, capsys):
        eml = tmp_path / "inv.eml"
        eml.write_bytes(sample_eml)
        extraction_client.classify.side_effect = ValueError("boom")

        with patch("invoice_intake.runner.main.ExtractionClient", return_value=extraction_client):
            code = run_cli(cli_config, "process", str(eml), "--tenant", str(tenant_id))

        assert code == 1
        assert json.loads(capsys.readouterr().out)["error"] == "Processing failed"

    def test_poll_without_connections(self, cli_config, capsys):
        assert run_cli(cli_config, "poll") == 0
        assert "No active connections" in capsys.readouterr().out

    def test_health_check_json(self, cli_config, connection_id, capsys):
        assert run_cli(cli_config, "health-check", "--json") == 0
        report = json.loads(capsys.readouterr().out)
        assert report["checks"]["down"] == 1
        assert report["alerts"][0]["alert_type"] == "pipeline_down"

    def test_retry_dead_letter(self, cli_config, capsys):
        assert run_cli(cli_config, "retry-dead-letter", "--lease-id", "99") == 0
        assert "Reset 0 lease(s)" in capsys.readouterr().out

    def test_ack_alert(self, cli_config, store, capsys):
        alert_id = store.insert_alert(AlertType.PIPELINE_DOWN, AlertSeverity.CRITICAL, "down")

        assert run_cli(cli_config, "ack-alert", str(alert_id), "--by", "ops") == 0
        assert run_cli(cli_config, "ack-alert", str(alert_id)) == 1
        assert store.get_alert(alert_id).acknowledged_by == "ops"

    def test_status_json(self, cli_config, tenant_id, connection_id, capsys):
        assert run_cli(cli_config, "status", "--json") == 0
        snapshot = json.loads(capsys.readouterr().out)
        assert snapshot["tenants"][0]["name"] == "Harbour Accounting"
        assert snapshot["tenants"][0]["pipeline_status"] == "unknown"

    def test_status_unknown_tenant(self, cli_config, capsys):
        assert run_cli(cli_config, "status", "--tenant", "7") == 1
        assert "Unknown tenant 7" in capsys.readouterr().out
