"""Tests for cli.py module."""

import json

import pytest

from resortdesk import db
from resortdesk.cli import main
from resortdesk.logging_setup import reset_logging


@pytest.fixture
def cli_config(tmp_path):
    """Write a config file pointing at a fresh database; yield (config path, db path)."""
    db_file = tmp_path / "cli.db"
    config_file = tmp_path / "config.toml"
    config_file.write_text(f'db_path = "{db_file}"\n')
    main(["-c", str(config_file), "init"])
    yield str(config_file), db_file
    reset_logging()


class TestCli:
    def test_init(self, cli_config, capsys):
        _, db_file = cli_config
        assert db_file.exists()

    def test_rule_add_list_disable(self, cli_config, capsys):
        config_file, db_file = cli_config

        main(["-c", config_file, "rule", "add", "before", "--days", "3", "--frequency", "weekly",
              "--subject", "Due soon: {{ invoice_number }}"])
        main(["-c", config_file, "rule", "disable", "1"])
        capsys.readouterr()
        main(["-c", config_file, "rule", "list"])

        out = capsys.readouterr().out
        assert "before" in out
        assert "weekly" in out
        assert "disabled" in out
        with db.get_db(db_file) as conn:
            assert db.get_reminder_rule(conn, 1).enabled is False

    def test_rule_enable_missing(self, cli_config):
        config_file, _ = cli_config
        with pytest.raises(SystemExit) as exc:
            main(["-c", config_file, "rule", "enable", "42"])
        assert exc.value.code == 1

    def test_check_with_date(self, cli_config, capsys):
        config_file, db_file = cli_config
        with db.get_db(db_file) as conn:
            invoice_id = db.create_invoice(
                conn, "INV-9", final_amount=80, status="Pending", due_date="2024-03-01",
            )
        capsys.readouterr()

        main(["-c", config_file, "check", "overdue", "--date", "2024-03-02"])

        result = json.loads(capsys.readouterr().out)
        assert result["marked_overdue"] == 1
        with db.get_db(db_file) as conn:
            assert db.get_invoice(conn, invoice_id).status == "Overdue"

    def test_check_bad_date(self, cli_config):
        config_file, _ = cli_config
        with pytest.raises(SystemExit):
            main(["-c", config_file, "check", "expiry", "--date", "March"])

    def test_invoice_show(self, cli_config, capsys):
        config_file, db_file = cli_config
        with db.get_db(db_file) as conn:
            db.create_invoice(
                conn, "INV-5", customer_name="Ada", email="ada@guest.test",
                final_amount=120, paid_amount=20, status="Sent", due_date="2024-03-01",
                reminder_configs={"after": {"enabled": False}},
            )
        capsys.readouterr()

        main(["-c", config_file, "invoice", "show", "INV-5"])

        out = capsys.readouterr().out
        assert "Balance: 100.00 of 120.00" in out
        assert "Last reminder: never" in out
        assert '"enabled": false' in out

    def test_invoice_show_missing(self, cli_config):
        config_file, _ = cli_config
        with pytest.raises(SystemExit) as exc:
            main(["-c", config_file, "invoice", "show", "INV-404"])
        assert exc.value.code == 1
