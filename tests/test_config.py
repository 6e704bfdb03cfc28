"""Configuration loading for resortdesk.config module."""

from pathlib import Path

from resortdesk.config import (
    Config,
    EmailConfig,
    SchedulerConfig,
    load_config,
)


class TestConfigDefaults:
    def test_default_db_path(self):
        assert Config().db_path == Path("data/resortdesk.db")

    def test_default_timezone(self):
        assert Config().timezone == "UTC"

    def test_default_schedule(self):
        sched = SchedulerConfig()
        assert sched.overdue_cron == "0 9 * * *"
        assert sched.reminder_cron == "0 10 * * *"
        assert sched.expiry_cron == "0 11 * * *"
        assert sched.run_on_startup is True
        assert sched.startup_delay == 5.0

    def test_default_email_disabled(self):
        cfg = Config()
        assert cfg.email.enabled is False
        assert cfg.email.smtp_port == 587
        assert cfg.email.timeout == 30.0

    def test_sender(self):
        assert EmailConfig(from_addr="a@b.c").sender == "a@b.c"
        assert EmailConfig(from_addr="a@b.c", from_name="Resort").sender == "Resort <a@b.c>"


class TestLoadConfig:
    def test_missing_file_gives_defaults(self, tmp_path):
        cfg = load_config(tmp_path / "nope.toml")
        assert cfg == Config()

    def test_full_file(self, tmp_path):
        path = tmp_path / "config.toml"
        path.write_text(
            'business_name = "Sea Breeze"\n'
            'timezone = "Asia/Kolkata"\n'
            'db_path = "/var/lib/resortdesk/billing.db"\n'
            "\n"
            "[email]\n"
            "enabled = true\n"
            'smtp_host = "smtp.example.com"\n'
            "smtp_port = 465\n"
            "timeout = 10\n"
            'from_addr = "billing@example.com"\n'
            "\n"
            "[scheduler]\n"
            'reminder_cron = "30 8 * * *"\n'
            "run_on_startup = false\n"
            "\n"
            "[ntfy]\n"
            "enabled = true\n"
            'topic = "billing-ops"\n'
            "\n"
            "[logging]\n"
            'level = "DEBUG"\n'
            'output = "both"\n'
            'file = "/var/log/resortdesk.log"\n'
        )

        cfg = load_config(path)

        assert cfg.business_name == "Sea Breeze"
        assert cfg.timezone == "Asia/Kolkata"
        assert cfg.db_path == Path("/var/lib/resortdesk/billing.db")
        assert cfg.email.enabled is True
        assert cfg.email.smtp_port == 465
        assert cfg.email.timeout == 10
        assert cfg.scheduler.reminder_cron == "30 8 * * *"
        assert cfg.scheduler.overdue_cron == "0 9 * * *"
        assert cfg.scheduler.run_on_startup is False
        assert cfg.ntfy.topic == "billing-ops"
        assert cfg.logging.level == "DEBUG"
        assert cfg.logging.output == "both"

    def test_env_secret_overrides(self, tmp_path, monkeypatch):
        path = tmp_path / "config.toml"
        path.write_text('[email]\nsmtp_password = "from-file"\n')
        monkeypatch.setenv("RESORTDESK_SMTP_PASSWORD", "from-env")
        monkeypatch.setenv("RESORTDESK_NTFY_TOKEN", "tk_env")

        cfg = load_config(path)

        assert cfg.email.smtp_password == "from-env"
        assert cfg.ntfy.token == "tk_env"
