"""Configuration loading for resortdesk."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

import tomli

logger = logging.getLogger("resortdesk.config")


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"           # INFO or DEBUG
    output: str = "console"       # console, file, or both
    file: str = ""                # log file path
    rotate: bool = True           # enable rotation
    max_size_mb: int = 10         # max file size before rotation
    backup_count: int = 5         # rotated files to keep


@dataclass
class EmailConfig:
    enabled: bool = False
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    from_addr: str = ""
    from_name: str = ""
    reply_to: str = ""
    timeout: float = 30.0  # seconds, per SMTP socket operation

    @property
    def sender(self) -> str:
        if self.from_name and self.from_addr:
            return f"{self.from_name} <{self.from_addr}>"
        return self.from_addr


@dataclass
class NtfyConfig:
    """ntfy push configuration for operator alerts."""
    enabled: bool = False
    server_url: str = "https://ntfy.sh"
    topic: str = ""
    token: str = ""       # bearer token auth
    username: str = ""     # basic auth (alternative to token)
    password: str = ""
    priority: int = 3


@dataclass
class SchedulerConfig:
    # Cron expressions, evaluated in Config.timezone
    overdue_cron: str = "0 9 * * *"
    reminder_cron: str = "0 10 * * *"
    expiry_cron: str = "0 11 * * *"
    custom_reminder_cron: str = "0 12 * * *"
    run_on_startup: bool = True
    startup_delay: float = 5.0  # seconds after start before the catch-up run
    lock_path: str = "/tmp/resortdesk-scheduler.lock"


@dataclass
class Config:
    business_name: str = "Resort Luxury Management System"
    timezone: str = "UTC"  # business timezone; all day comparisons use it
    db_path: Path = field(default_factory=lambda: Path("data/resortdesk.db"))
    email: EmailConfig = field(default_factory=EmailConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    ntfy: NtfyConfig = field(default_factory=NtfyConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def load_config(config_path: Path | None = None) -> Config:
    """Load configuration from TOML file."""
    if config_path is None:
        # Look for config in standard locations
        candidates = [
            Path("config/config.toml"),
            Path.home() / ".config/resortdesk/config.toml",
            Path("/etc/resortdesk/config.toml"),
        ]
        for candidate in candidates:
            if candidate.exists():
                config_path = candidate
                break

    if config_path is None or not config_path.exists():
        config = Config()
    else:
        with open(config_path, "rb") as f:
            data = tomli.load(f)
        config = _parse_config(data)
        logger.debug("Loaded config from %s", config_path)

    # Environment variable overrides for secrets (allows EnvironmentFile= usage)
    _env_secret_overrides = [
        ("RESORTDESK_SMTP_PASSWORD", "email", "smtp_password"),
        ("RESORTDESK_NTFY_TOKEN", "ntfy", "token"),
        ("RESORTDESK_NTFY_PASSWORD", "ntfy", "password"),
    ]
    for env_var, section, field_name in _env_secret_overrides:
        val = os.environ.get(env_var)
        if val:
            setattr(getattr(config, section), field_name, val)

    return config


def _parse_config(data: dict) -> Config:
    config = Config()

    if "business_name" in data:
        config.business_name = data["business_name"]

    if "timezone" in data:
        config.timezone = data["timezone"]

    if "db_path" in data:
        config.db_path = Path(data["db_path"])

    if "email" in data:
        email = data["email"]
        config.email = EmailConfig(
            enabled=email.get("enabled", False),
            smtp_host=email.get("smtp_host", ""),
            smtp_port=email.get("smtp_port", 587),
            smtp_user=email.get("smtp_user", ""),
            smtp_password=email.get("smtp_password", ""),
            from_addr=email.get("from_addr", ""),
            from_name=email.get("from_name", ""),
            reply_to=email.get("reply_to", ""),
            timeout=email.get("timeout", 30.0),
        )

    if "scheduler" in data:
        sched = data["scheduler"]
        config.scheduler = SchedulerConfig(
            overdue_cron=sched.get("overdue_cron", "0 9 * * *"),
            reminder_cron=sched.get("reminder_cron", "0 10 * * *"),
            expiry_cron=sched.get("expiry_cron", "0 11 * * *"),
            custom_reminder_cron=sched.get("custom_reminder_cron", "0 12 * * *"),
            run_on_startup=sched.get("run_on_startup", True),
            startup_delay=sched.get("startup_delay", 5.0),
            lock_path=sched.get("lock_path", "/tmp/resortdesk-scheduler.lock"),
        )

    if "ntfy" in data:
        n = data["ntfy"]
        config.ntfy = NtfyConfig(
            enabled=n.get("enabled", False),
            server_url=n.get("server_url", "https://ntfy.sh"),
            topic=n.get("topic", ""),
            token=n.get("token", ""),
            username=n.get("username", ""),
            password=n.get("password", ""),
            priority=n.get("priority", 3),
        )

    if "logging" in data:
        log = data["logging"]
        config.logging = LoggingConfig(
            level=log.get("level", "INFO"),
            output=log.get("output", "console"),
            file=log.get("file", ""),
            rotate=log.get("rotate", True),
            max_size_mb=log.get("max_size_mb", 10),
            backup_count=log.get("backup_count", 5),
        )

    return config
