"""Tests for reminder_policy.py module."""

from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

import pytest

from resortdesk.db import ReminderRule
from resortdesk.reminder_policy import (
    ConfigurationError,
    InvoiceReminderConfigs,
    ReminderOverride,
    date_key,
    resolve_policy,
    should_send,
    trigger_date,
)


def _rule(reminder_type="before", days=3, frequency="once", **kw):
    return ReminderRule(id=1, reminder_type=reminder_type, days=days, frequency=frequency, **kw)


class TestDateKey:
    def test_date_string(self):
        assert date_key("2024-06-10") == date(2024, 6, 10)

    def test_datetime_string_drops_time(self):
        assert date_key("2024-06-10T23:59:00") == date(2024, 6, 10)

    def test_aware_datetime_uses_business_timezone(self):
        # 20:00 UTC is already the next day in Kolkata
        value = datetime(2024, 6, 10, 20, 0, tzinfo=timezone.utc)
        assert date_key(value, ZoneInfo("Asia/Kolkata")) == date(2024, 6, 11)
        assert date_key(value, ZoneInfo("UTC")) == date(2024, 6, 10)

    def test_empty_values(self):
        assert date_key(None) is None
        assert date_key("") is None

    def test_malformed_raises(self):
        with pytest.raises(ValueError):
            date_key("not-a-date")


class TestTriggerDate:
    def test_before(self):
        assert trigger_date(date(2024, 6, 10), "before", 3) == date(2024, 6, 7)

    def test_on_ignores_days(self):
        assert trigger_date(date(2024, 6, 10), "on", 5) == date(2024, 6, 10)

    def test_after_crosses_month(self):
        assert trigger_date(date(2024, 1, 30), "after", 5) == date(2024, 2, 4)

    def test_unknown_type(self):
        with pytest.raises(ConfigurationError):
            trigger_date(date(2024, 6, 10), "sometime", 1)


class TestShouldSend:
    def test_once_three_days_before(self):
        send_on = trigger_date(date(2024, 6, 10), "before", 3)
        assert send_on == date(2024, 6, 7)
        assert should_send(date(2024, 6, 7), send_on, "once")
        assert not should_send(date(2024, 6, 6), send_on, "once")
        assert not should_send(date(2024, 6, 8), send_on, "once")

    def test_daily(self):
        send_on = date(2024, 6, 1)
        assert not should_send(date(2024, 5, 31), send_on, "daily")
        assert should_send(date(2024, 6, 1), send_on, "daily")
        assert should_send(date(2024, 6, 20), send_on, "daily")

    def test_weekly(self):
        send_on = date(2024, 6, 1)
        assert should_send(date(2024, 6, 1), send_on, "weekly")
        assert should_send(date(2024, 6, 8), send_on, "weekly")
        assert should_send(date(2024, 6, 15), send_on, "weekly")
        assert not should_send(date(2024, 6, 5), send_on, "weekly")
        assert not should_send(date(2024, 5, 25), send_on, "weekly")

    def test_twice(self):
        send_on = date(2024, 6, 1)
        sent = [d for d in range(1, 15) if should_send(date(2024, 6, d), send_on, "twice")]
        assert sent == [1, 4]

    def test_unknown_frequency(self):
        with pytest.raises(ConfigurationError):
            should_send(date(2024, 6, 1), date(2024, 6, 1), "hourly")


class TestResolvePolicy:
    def test_no_override_uses_rule(self):
        policy = resolve_policy(_rule(subject="Hi", template="Body"), InvoiceReminderConfigs())
        assert policy.reminder_type == "before"
        assert policy.days == 3
        assert policy.frequency == "once"
        assert policy.subject == "Hi"
        assert policy.template == "Body"

    def test_override_days_and_frequency(self):
        configs = InvoiceReminderConfigs(before=ReminderOverride(days=7, frequency="daily"))
        policy = resolve_policy(_rule(), configs)
        assert policy.days == 7
        assert policy.frequency == "daily"

    def test_override_disabled_suppresses_type(self):
        configs = InvoiceReminderConfigs(after=ReminderOverride(enabled=False))
        assert resolve_policy(_rule("after", days=5), configs) is None

    def test_override_for_other_type_is_ignored(self):
        configs = InvoiceReminderConfigs(after=ReminderOverride(enabled=False))
        assert resolve_policy(_rule("before"), configs) is not None

    def test_override_enabled_without_values_inherits(self):
        configs = InvoiceReminderConfigs(on=ReminderOverride(enabled=True))
        policy = resolve_policy(_rule("on", days=1, frequency="weekly"), configs)
        assert policy.frequency == "weekly"

    def test_missing_frequency_defaults_to_once(self):
        assert resolve_policy(_rule(frequency=""), None).frequency == "once"

    @pytest.mark.parametrize("days", [0, -2, "3", None, True])
    def test_malformed_days(self, days):
        with pytest.raises(ConfigurationError):
            resolve_policy(_rule("after", days=days), None)

    def test_on_type_does_not_validate_days(self):
        assert resolve_policy(_rule("on", days=0), None).days == 0

    def test_unknown_type(self):
        with pytest.raises(ConfigurationError):
            resolve_policy(_rule("sometime"), None)

    def test_unknown_override_frequency(self):
        configs = InvoiceReminderConfigs(before=ReminderOverride(frequency="hourly"))
        with pytest.raises(ConfigurationError):
            resolve_policy(_rule(), configs)


class TestInvoiceReminderConfigs:
    def test_from_dict(self):
        configs = InvoiceReminderConfigs.from_dict({
            "before": {"days": 2},
            "after": {"enabled": False},
            "bogus": {"days": 1},
        })
        assert configs.before == ReminderOverride(days=2)
        assert configs.after == ReminderOverride(enabled=False)
        assert configs.on is None
        assert configs.get("bogus") is None

    def test_to_dict_drops_unset(self):
        configs = InvoiceReminderConfigs(on=ReminderOverride(frequency="twice"))
        assert configs.to_dict() == {"on": {"frequency": "twice"}}

    def test_from_empty(self):
        assert InvoiceReminderConfigs.from_dict(None) == InvoiceReminderConfigs()
