"""Scheduled billing checks: overdue invoices, payment reminders, quotation expiry.

Each check takes an open connection and the app config, walks its records
one at a time in storage order, and returns a dict of counts. A failure on
one record is logged and counted and never stops the rest of the batch.

All day comparisons happen in the business timezone (``Config.timezone``).
``now`` can be passed in to pin the clock; otherwise the current time is used.

The async checks run every storage call through ``asyncio.to_thread``. Each
invoice is re-read just before its send decision and skipped if another run
reminded or settled it after the batch was fetched.
"""

import asyncio
import logging
from datetime import date, datetime, tzinfo
from typing import TYPE_CHECKING
from zoneinfo import ZoneInfo

from croniter import croniter

from . import db
from .logging_setup import log_context
from .mailer import DeliveryError
from .mailer import send_reminder as _send_reminder_impl
from .reminder_policy import (
    ConfigurationError,
    EffectivePolicy,
    date_key,
    resolve_policy,
    should_send,
    trigger_date,
)

if TYPE_CHECKING:
    from .config import Config

logger = logging.getLogger("resortdesk.billing_scheduler")


def _now(tz=None):
    """Current time; thin wrapper for testability."""
    return datetime.now(tz)


def business_tz(config: "Config") -> tzinfo:
    try:
        return ZoneInfo(config.timezone)
    except Exception:
        logger.warning("Unknown timezone %r, falling back to UTC", config.timezone)
        return ZoneInfo("UTC")


def _clock(config: "Config", now: datetime | None) -> tuple[datetime, date, tzinfo]:
    """Resolve (now, today, tz). Naive ``now`` values are taken as business-local."""
    tz = business_tz(config)
    if now is None:
        now = _now(tz)
    elif now.tzinfo is None:
        now = now.replace(tzinfo=tz)
    return now, date_key(now, tz), tz


def _day(value, tz: tzinfo, label: str) -> date | None:
    try:
        return date_key(value, tz)
    except ValueError:
        logger.warning("Ignoring malformed date %r on %s", value, label)
        return None


async def _send_reminder(
    config: "Config",
    invoice: db.Invoice,
    reminder_type: str,
    template: str | None = None,
    subject: str | None = None,
) -> dict:
    """Send a reminder email. Delegates to the mailer module."""
    return await _send_reminder_impl(config, invoice, reminder_type, template, subject)


def _apply_overdue(conn, invoice: db.Invoice, today: date, tz: tzinfo) -> bool:
    """Move an unpaid, past-due invoice to Overdue. Returns True if it changed."""
    if invoice.status not in db.OVERDUE_ELIGIBLE_STATUSES or invoice.balance <= 0:
        return False
    due = _day(invoice.due_date, tz, invoice.invoice_number)
    if due is None or due >= today:
        return False
    db.set_invoice_status(conn, invoice.id, "Overdue")
    invoice.status = "Overdue"
    logger.info("Marked invoice %s as Overdue (due %s)", invoice.invoice_number, due.isoformat())
    return True


def _select_policy(
    invoice: db.Invoice,
    rules: list[db.ReminderRule],
    today: date,
    tz: tzinfo,
    results: dict,
) -> EffectivePolicy | None:
    """First rule (in stored order) whose effective policy says send today."""
    due = _day(invoice.due_date, tz, invoice.invoice_number)
    if due is None:
        return None

    for rule in rules:
        try:
            policy = resolve_policy(rule, invoice.reminder_configs)
            if policy is None:
                continue
            send_on = trigger_date(due, policy.reminder_type, policy.days)
            if should_send(today, send_on, policy.frequency):
                return policy
        except ConfigurationError as e:
            results["configuration_errors"] += 1
            logger.warning(
                "Skipping reminder rule %d (%s) for invoice %s: %s",
                rule.id, rule.reminder_type, invoice.invoice_number, e,
            )
    return None


async def _deliver(
    conn,
    config: "Config",
    invoice: db.Invoice,
    reminder_type: str,
    template: str | None,
    subject: str | None,
    now: datetime,
    results: dict,
) -> bool:
    """Send one reminder and record it on the invoice. Returns True if it went out."""
    try:
        outcome = await _send_reminder(config, invoice, reminder_type, template, subject)
    except DeliveryError as e:
        results["delivery_failures"] += 1
        logger.error(
            "Failed to send %s reminder for invoice %s: %s",
            reminder_type, invoice.invoice_number, e,
        )
        return False
    except Exception as e:
        results["delivery_failures"] += 1
        logger.error(
            "Unexpected error sending %s reminder for invoice %s: %s",
            reminder_type, invoice.invoice_number, e,
        )
        return False

    if not outcome or not outcome.get("success"):
        results["delivery_failures"] += 1
        logger.error(
            "Mailer reported failure for %s reminder on invoice %s",
            reminder_type, invoice.invoice_number,
        )
        return False

    sent_at = now.isoformat()
    await asyncio.to_thread(db.set_invoice_last_reminder, conn, invoice.id, sent_at)
    invoice.last_reminder_sent_at = sent_at
    return True


async def _send_custom_reminder(
    conn, config: "Config", invoice: db.Invoice, now: datetime, results: dict,
) -> bool:
    """Send the one-off custom reminder (default "on" content) and clear the date."""
    if not await _deliver(conn, config, invoice, "on", None, None, now, results):
        return False
    await asyncio.to_thread(db.clear_custom_reminder, conn, invoice.id)
    invoice.custom_reminder_date = None
    logger.info("Sent custom reminder for invoice %s", invoice.invoice_number)
    return True


def _next_run(cron: str, now: datetime) -> str | None:
    try:
        return croniter(cron, now).get_next(datetime).isoformat()
    except Exception as e:
        logger.warning("Cannot compute next run from %r: %s", cron, e)
        return None


def _reminder_results() -> dict:
    return {
        "invoices_checked": 0,
        "reminders_sent": 0,
        "custom_reminders_sent": 0,
        "marked_overdue": 0,
        "skipped_already_reminded": 0,
        "delivery_failures": 0,
        "persistence_failures": 0,
        "configuration_errors": 0,
        "errors": 0,
    }


async def _refresh(conn, invoice: db.Invoice) -> db.Invoice | None:
    """Stored copy of ``invoice``, or None once it is no longer a reminder candidate."""
    current = await asyncio.to_thread(db.get_invoice, conn, invoice.id)
    if current is None or not current.is_reminder_candidate:
        return None
    return current


async def _process_invoice(
    conn,
    config: "Config",
    invoice: db.Invoice,
    rules: list[db.ReminderRule],
    now: datetime,
    today: date,
    tz: tzinfo,
    results: dict,
) -> None:
    invoice = await _refresh(conn, invoice)
    if invoice is None:
        logger.debug("No longer a reminder candidate, skipping")
        return

    if await asyncio.to_thread(_apply_overdue, conn, invoice, today, tz):
        results["marked_overdue"] += 1

    # At most one reminder per invoice per calendar day
    if _day(invoice.last_reminder_sent_at, tz, invoice.invoice_number) == today:
        results["skipped_already_reminded"] += 1
        return

    policy = _select_policy(invoice, rules, today, tz, results)
    if policy is not None:
        # First matching rule wins, whether or not delivery succeeds
        delivered = await _deliver(
            conn, config, invoice, policy.reminder_type,
            policy.template or None, policy.subject or None, now, results,
        )
        if delivered:
            results["reminders_sent"] += 1
            logger.info(
                "Sent %s reminder for invoice %s (%s)",
                policy.reminder_type, invoice.invoice_number, policy.frequency,
            )
        return

    if _day(invoice.custom_reminder_date, tz, invoice.invoice_number) == today:
        if await _send_custom_reminder(conn, config, invoice, now, results):
            results["custom_reminders_sent"] += 1


async def check_reminders(conn, config: "Config", now: datetime | None = None) -> dict:
    """Send today's payment reminders for every candidate invoice.

    Returns counts: invoices_checked, reminders_sent, custom_reminders_sent,
    marked_overdue, skipped_already_reminded, delivery_failures,
    persistence_failures, configuration_errors, errors.
    """
    now, today, tz = _clock(config, now)
    results = _reminder_results()

    rules = await asyncio.to_thread(db.get_enabled_reminder_rules, conn)
    invoices = await asyncio.to_thread(db.get_reminder_candidates, conn)
    logger.debug(
        "Reminder run for %s: %d invoice(s), %d enabled rule(s)",
        today.isoformat(), len(invoices), len(rules),
    )

    for invoice in invoices:
        results["invoices_checked"] += 1
        with log_context(invoice=invoice.invoice_number):
            try:
                await _process_invoice(conn, config, invoice, rules, now, today, tz, results)
                await asyncio.to_thread(conn.commit)
            except db.PersistenceError as e:
                results["persistence_failures"] += 1
                logger.error("Failed to save invoice %s: %s", invoice.invoice_number, e)
            except Exception as e:
                results["errors"] += 1
                logger.error("Error processing reminders for invoice %s: %s", invoice.invoice_number, e)

    stamp = now.isoformat()
    next_run = _next_run(config.scheduler.reminder_cron, now)
    for rule in rules:
        try:
            await asyncio.to_thread(db.set_reminder_rule_run, conn, rule.id, stamp, next_run)
        except db.PersistenceError as e:
            results["persistence_failures"] += 1
            logger.error("Failed to stamp reminder rule %d: %s", rule.id, e)

    if results["reminders_sent"] or results["custom_reminders_sent"]:
        logger.info(
            "Reminder run: %d reminder(s), %d custom reminder(s) sent across %d invoice(s)",
            results["reminders_sent"], results["custom_reminders_sent"], results["invoices_checked"],
        )
    return results


async def check_custom_reminders(conn, config: "Config", now: datetime | None = None) -> dict:
    """Send one-off reminders for invoices whose custom reminder date is today."""
    now, today, tz = _clock(config, now)
    results = _reminder_results()

    for invoice in await asyncio.to_thread(db.get_custom_reminder_candidates, conn):
        if _day(invoice.custom_reminder_date, tz, invoice.invoice_number) != today:
            continue
        results["invoices_checked"] += 1
        with log_context(invoice=invoice.invoice_number):
            try:
                invoice = await _refresh(conn, invoice)
                if invoice is None or _day(invoice.custom_reminder_date, tz, invoice.invoice_number) != today:
                    continue
                if await asyncio.to_thread(_apply_overdue, conn, invoice, today, tz):
                    results["marked_overdue"] += 1
                if _day(invoice.last_reminder_sent_at, tz, invoice.invoice_number) == today:
                    results["skipped_already_reminded"] += 1
                elif await _send_custom_reminder(conn, config, invoice, now, results):
                    results["custom_reminders_sent"] += 1
                await asyncio.to_thread(conn.commit)
            except db.PersistenceError as e:
                results["persistence_failures"] += 1
                logger.error("Failed to save invoice %s: %s", invoice.invoice_number, e)
            except Exception as e:
                results["errors"] += 1
                logger.error("Error sending custom reminder for invoice %s: %s", invoice.invoice_number, e)

    return results


def check_overdue_invoices(conn, config: "Config", now: datetime | None = None) -> dict:
    """Mark unpaid invoices past their due date as Overdue.

    Returns dict with 'invoices_checked', 'marked_overdue' and
    'persistence_failures' counts.
    """
    _, today, tz = _clock(config, now)
    results = {"invoices_checked": 0, "marked_overdue": 0, "persistence_failures": 0}

    for invoice in db.get_overdue_candidates(conn, today, tz):
        results["invoices_checked"] += 1
        with log_context(invoice=invoice.invoice_number):
            try:
                if _apply_overdue(conn, invoice, today, tz):
                    results["marked_overdue"] += 1
                conn.commit()
            except db.PersistenceError as e:
                results["persistence_failures"] += 1
                logger.error("Failed to mark invoice %s overdue: %s", invoice.invoice_number, e)

    if results["marked_overdue"]:
        logger.info("Marked %d invoice(s) as Overdue", results["marked_overdue"])
    return results


def check_expired_quotations(conn, config: "Config", now: datetime | None = None) -> dict:
    """Expire open quotations whose validity date has passed.

    Accepted, rejected, already-expired and converted quotations are never
    touched. Returns dict with 'quotations_checked', 'expired' and
    'persistence_failures' counts.
    """
    _, today, tz = _clock(config, now)
    results = {"quotations_checked": 0, "expired": 0, "persistence_failures": 0}

    for quotation in db.get_expirable_quotations(conn, today, tz):
        results["quotations_checked"] += 1
        try:
            db.set_quotation_status(conn, quotation.id, "Expired")
            conn.commit()
        except db.PersistenceError as e:
            results["persistence_failures"] += 1
            logger.error("Failed to expire quotation %s: %s", quotation.quotation_number, e)
            continue
        results["expired"] += 1
        logger.info("Marked quotation %s as Expired", quotation.quotation_number)

    return results
