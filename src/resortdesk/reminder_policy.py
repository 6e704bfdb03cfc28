"""Reminder policy: rule/override merging, trigger dates and send-day rules.

Everything here is pure. Callers pass the dates in; nothing reads the clock.
Day comparisons always go through ``date_key`` so time-of-day and timezone
offsets never leak into equality checks.
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta, tzinfo
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .db import ReminderRule

REMINDER_TYPES = ("before", "on", "after")
FREQUENCIES = ("once", "daily", "weekly", "twice")

# "twice" sends on the trigger date and once more this many days later
TWICE_FOLLOW_UP = timedelta(days=3)


class ConfigurationError(ValueError):
    """A reminder rule or override cannot be evaluated (bad type, days or frequency)."""


@dataclass(frozen=True)
class ReminderOverride:
    """Per-invoice override of one reminder type. None means inherit the global rule."""
    enabled: bool | None = None
    days: int | None = None
    frequency: str | None = None

    @classmethod
    def from_dict(cls, data: dict) -> "ReminderOverride":
        return cls(
            enabled=data.get("enabled"),
            days=data.get("days"),
            frequency=data.get("frequency"),
        )

    def to_dict(self) -> dict:
        return {
            k: v for k, v in (
                ("enabled", self.enabled),
                ("days", self.days),
                ("frequency", self.frequency),
            ) if v is not None
        }


@dataclass(frozen=True)
class InvoiceReminderConfigs:
    """The optional override for each reminder type on one invoice."""
    before: ReminderOverride | None = None
    on: ReminderOverride | None = None
    after: ReminderOverride | None = None

    def get(self, reminder_type: str) -> ReminderOverride | None:
        if reminder_type not in REMINDER_TYPES:
            return None
        return getattr(self, reminder_type)

    @classmethod
    def from_dict(cls, data: dict | None) -> "InvoiceReminderConfigs":
        if not data:
            return cls()
        overrides = {}
        for reminder_type in REMINDER_TYPES:
            entry = data.get(reminder_type)
            if isinstance(entry, dict):
                overrides[reminder_type] = ReminderOverride.from_dict(entry)
        return cls(**overrides)

    def to_dict(self) -> dict:
        result = {}
        for reminder_type in REMINDER_TYPES:
            override = getattr(self, reminder_type)
            if override is not None:
                result[reminder_type] = override.to_dict()
        return result


@dataclass(frozen=True)
class EffectivePolicy:
    reminder_type: str
    days: int
    frequency: str
    template: str = ""
    subject: str = ""


def date_key(value, tz: tzinfo | None = None) -> date | None:
    """Normalize a date, datetime or ISO string to a calendar date.

    Aware datetimes are converted to ``tz`` first (when given). Naive
    datetimes and plain dates are taken at face value.
    """
    if value is None or value == "":
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value) if "T" in value or " " in value else date.fromisoformat(value[:10])
    if isinstance(value, datetime):
        if value.tzinfo is not None and tz is not None:
            value = value.astimezone(tz)
        return value.date()
    return value


def _check_days(days, reminder_type: str) -> int:
    if isinstance(days, bool) or not isinstance(days, int) or days < 1:
        raise ConfigurationError(f"invalid days {days!r} for '{reminder_type}' reminder")
    return days


def resolve_policy(
    rule: "ReminderRule",
    configs: InvoiceReminderConfigs | None,
) -> EffectivePolicy | None:
    """Merge a global rule with the invoice's override for the same type.

    Returns None when the invoice suppresses this reminder type.
    """
    reminder_type = rule.reminder_type
    if reminder_type not in REMINDER_TYPES:
        raise ConfigurationError(f"unknown reminder type {reminder_type!r}")

    override = configs.get(reminder_type) if configs else None
    if override is not None and override.enabled is False:
        return None

    days = override.days if override is not None and override.days is not None else rule.days
    frequency = (
        override.frequency if override is not None and override.frequency
        else rule.frequency or "once"
    )

    if frequency not in FREQUENCIES:
        raise ConfigurationError(f"unknown frequency {frequency!r} for '{reminder_type}' reminder")
    if reminder_type != "on":
        days = _check_days(days, reminder_type)

    return EffectivePolicy(
        reminder_type=reminder_type,
        days=days,
        frequency=frequency,
        template=rule.template,
        subject=rule.subject,
    )


def trigger_date(due_date: date, reminder_type: str, days: int) -> date:
    """Date a reminder of this type becomes eligible for an invoice due on ``due_date``."""
    if reminder_type == "before":
        return due_date - timedelta(days=days)
    if reminder_type == "on":
        return due_date
    if reminder_type == "after":
        return due_date + timedelta(days=days)
    raise ConfigurationError(f"unknown reminder type {reminder_type!r}")


def should_send(today: date, send_on: date, frequency: str) -> bool:
    """Whether ``today`` is a send-day for a reminder triggered on ``send_on``."""
    if frequency == "once":
        return today == send_on
    if frequency == "daily":
        return today >= send_on
    if frequency == "weekly":
        return today >= send_on and (today - send_on).days % 7 == 0
    if frequency == "twice":
        return today == send_on or today == send_on + TWICE_FOLLOW_UP
    raise ConfigurationError(f"unknown frequency {frequency!r}")
