"""Database operations for invoices, quotations and reminder rules.

The scheduler owns a handful of columns (invoice ``status``,
``last_reminder_sent_at``, ``custom_reminder_date``, quotation ``status`` for
the automatic transitions, and the rule run stamps). Nothing else in the
process writes them, so no locking is done around those updates.
"""

import json
import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, tzinfo
from pathlib import Path
from typing import Iterator

from .reminder_policy import InvoiceReminderConfigs, date_key

logger = logging.getLogger("resortdesk.db")

INVOICE_STATUSES = ("Draft", "Sent", "Pending", "Partial", "Paid", "Overdue", "Cancelled")
QUOTATION_STATUSES = ("Draft", "Sent", "Accepted", "Rejected", "Expired")

# Candidacy: only these statuses can receive payment reminders
REMINDABLE_STATUSES = ("Pending", "Partial", "Sent", "Overdue")
# Statuses that move to Overdue once the due date has passed
OVERDUE_ELIGIBLE_STATUSES = ("Pending", "Partial", "Sent")
# Quotations in these statuses are never auto-expired
FINAL_QUOTATION_STATUSES = ("Accepted", "Rejected", "Expired")


class PersistenceError(Exception):
    """A scheduler write to the billing database failed."""


@dataclass
class Invoice:
    id: int
    invoice_number: str
    customer_name: str
    email: str
    final_amount: float
    paid_amount: float = 0.0
    due_date: str | None = None
    status: str = "Draft"
    reminder_configs: InvoiceReminderConfigs = field(default_factory=InvoiceReminderConfigs)
    reminders_enabled: bool = True
    last_reminder_sent_at: str | None = None
    custom_reminder_date: str | None = None
    booking_number: str | None = None
    created_at: str | None = None

    @property
    def balance(self) -> float:
        return self.final_amount - self.paid_amount

    @property
    def is_reminder_candidate(self) -> bool:
        return (
            self.status in REMINDABLE_STATUSES
            and self.balance > 0
            and self.reminders_enabled
        )

    def is_overdue(self, today: date, tz: tzinfo | None = None) -> bool:
        due = date_key(self.due_date, tz)
        return due is not None and today > due and self.status not in ("Paid", "Cancelled")


@dataclass
class Quotation:
    id: int
    quotation_number: str
    customer_name: str
    email: str
    final_amount: float
    status: str = "Draft"
    valid_until: str | None = None
    converted_to_booking: bool = False
    created_at: str | None = None

    def is_expired(self, today: date, tz: tzinfo | None = None) -> bool:
        valid_until = date_key(self.valid_until, tz)
        return valid_until is not None and today > valid_until and self.status != "Accepted"


@dataclass
class ReminderRule:
    id: int
    reminder_type: str
    days: int
    frequency: str = "once"
    subject: str = ""
    template: str = ""
    enabled: bool = True
    last_run_at: str | None = None
    next_run_at: str | None = None
    created_at: str | None = None


def init_db(db_path: Path) -> None:
    """Initialize database with schema."""
    schema_path = Path(__file__).parent / "schema.sql"
    with sqlite3.connect(db_path) as conn:
        conn.executescript(schema_path.read_text())


def connect(db_path: Path) -> sqlite3.Connection:
    """Open a connection with row factory.

    The connection may be handed to worker threads (the async checks run
    their queries through ``asyncio.to_thread``); callers use it from one
    thread at a time.
    """
    # timeout=30.0 waits up to 30s for locks instead of failing immediately
    conn = sqlite3.connect(db_path, timeout=30.0, check_same_thread=False)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.row_factory = sqlite3.Row
    return conn


@contextmanager
def get_db(db_path: Path) -> Iterator[sqlite3.Connection]:
    """Get database connection with row factory."""
    conn = connect(db_path)
    try:
        yield conn
        conn.commit()
    finally:
        conn.close()


@contextmanager
def _writing(what: str) -> Iterator[None]:
    try:
        yield
    except sqlite3.Error as e:
        raise PersistenceError(f"{what}: {e}") from e


def _placeholders(values: tuple) -> str:
    return ", ".join("?" for _ in values)


def _stored_date(value: str | None, label: str, tz: tzinfo | None = None) -> date | None:
    """Parse a stored date column; malformed values are logged and treated as unset."""
    try:
        return date_key(value, tz)
    except ValueError:
        logger.warning("Ignoring malformed date %r on %s", value, label)
        return None


# ============================================================================
# Invoices
# ============================================================================


def _parse_reminder_configs(raw: str | None, invoice_number: str) -> InvoiceReminderConfigs:
    if not raw:
        return InvoiceReminderConfigs()
    try:
        return InvoiceReminderConfigs.from_dict(json.loads(raw))
    except (json.JSONDecodeError, TypeError, AttributeError) as e:
        logger.warning("Ignoring malformed reminder_configs on %s: %s", invoice_number, e)
        return InvoiceReminderConfigs()


def _row_to_invoice(row: sqlite3.Row) -> Invoice:
    return Invoice(
        id=row["id"],
        invoice_number=row["invoice_number"],
        customer_name=row["customer_name"],
        email=row["email"],
        final_amount=row["final_amount"],
        paid_amount=row["paid_amount"],
        due_date=row["due_date"],
        status=row["status"],
        reminder_configs=_parse_reminder_configs(row["reminder_configs"], row["invoice_number"]),
        reminders_enabled=bool(row["reminders_enabled"]),
        last_reminder_sent_at=row["last_reminder_sent_at"],
        custom_reminder_date=row["custom_reminder_date"],
        booking_number=row["booking_number"],
        created_at=row["created_at"],
    )


def create_invoice(
    conn: sqlite3.Connection,
    invoice_number: str,
    customer_name: str = "",
    email: str = "",
    final_amount: float = 0.0,
    paid_amount: float = 0.0,
    due_date: str | None = None,
    status: str = "Draft",
    reminder_configs: InvoiceReminderConfigs | dict | None = None,
    reminders_enabled: bool = True,
    custom_reminder_date: str | None = None,
    booking_number: str | None = None,
) -> int:
    """Create an invoice and return its ID."""
    if isinstance(reminder_configs, InvoiceReminderConfigs):
        reminder_configs = reminder_configs.to_dict()
    cursor = conn.execute(
        """
        INSERT INTO invoices (
            invoice_number, booking_number, customer_name, email, final_amount,
            paid_amount, due_date, status, reminder_configs, reminders_enabled,
            custom_reminder_date
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            invoice_number,
            booking_number,
            customer_name,
            email,
            final_amount,
            paid_amount,
            due_date,
            status,
            json.dumps(reminder_configs) if reminder_configs else None,
            1 if reminders_enabled else 0,
            custom_reminder_date,
        ),
    )
    return cursor.lastrowid


def get_invoice(conn: sqlite3.Connection, invoice_id: int) -> Invoice | None:
    cursor = conn.execute("SELECT * FROM invoices WHERE id = ?", (invoice_id,))
    row = cursor.fetchone()
    return _row_to_invoice(row) if row else None


def get_invoice_by_number(conn: sqlite3.Connection, invoice_number: str) -> Invoice | None:
    cursor = conn.execute("SELECT * FROM invoices WHERE invoice_number = ?", (invoice_number,))
    row = cursor.fetchone()
    return _row_to_invoice(row) if row else None


def get_reminder_candidates(conn: sqlite3.Connection) -> list[Invoice]:
    """Invoices that may receive a payment reminder, in id order."""
    cursor = conn.execute(
        f"""
        SELECT * FROM invoices
        WHERE status IN ({_placeholders(REMINDABLE_STATUSES)})
          AND final_amount - paid_amount > 0
          AND reminders_enabled != 0
        ORDER BY id
        """,
        REMINDABLE_STATUSES,
    )
    return [_row_to_invoice(row) for row in cursor.fetchall()]


def get_custom_reminder_candidates(conn: sqlite3.Connection) -> list[Invoice]:
    """Reminder candidates that carry a one-off custom reminder date."""
    return [inv for inv in get_reminder_candidates(conn) if inv.custom_reminder_date]


def get_overdue_candidates(
    conn: sqlite3.Connection, today: date, tz: tzinfo | None = None,
) -> list[Invoice]:
    """Unpaid invoices whose due date is before ``today`` and not yet marked Overdue.

    Stored timestamps with an offset are read as calendar days in ``tz``.
    """
    cursor = conn.execute(
        f"""
        SELECT * FROM invoices
        WHERE status IN ({_placeholders(OVERDUE_ELIGIBLE_STATUSES)})
          AND final_amount - paid_amount > 0
          AND due_date IS NOT NULL AND due_date != ''
        ORDER BY id
        """,
        OVERDUE_ELIGIBLE_STATUSES,
    )
    overdue = []
    for row in cursor.fetchall():
        invoice = _row_to_invoice(row)
        due = _stored_date(invoice.due_date, invoice.invoice_number, tz)
        if due is not None and due < today:
            overdue.append(invoice)
    return overdue


def set_invoice_status(conn: sqlite3.Connection, invoice_id: int, status: str) -> None:
    if status not in INVOICE_STATUSES:
        raise ValueError(f"Unknown invoice status: {status}")
    with _writing(f"set status of invoice {invoice_id}"):
        conn.execute(
            "UPDATE invoices SET status = ?, updated_at = datetime('now') WHERE id = ?",
            (status, invoice_id),
        )


def set_invoice_last_reminder(conn: sqlite3.Connection, invoice_id: int, sent_at: str) -> None:
    """Record when the last payment reminder went out for an invoice."""
    with _writing(f"record reminder for invoice {invoice_id}"):
        conn.execute(
            "UPDATE invoices SET last_reminder_sent_at = ?, updated_at = datetime('now') WHERE id = ?",
            (sent_at, invoice_id),
        )


def clear_custom_reminder(conn: sqlite3.Connection, invoice_id: int) -> None:
    with _writing(f"clear custom reminder of invoice {invoice_id}"):
        conn.execute(
            "UPDATE invoices SET custom_reminder_date = NULL, updated_at = datetime('now') WHERE id = ?",
            (invoice_id,),
        )


# ============================================================================
# Quotations
# ============================================================================


def _row_to_quotation(row: sqlite3.Row) -> Quotation:
    return Quotation(
        id=row["id"],
        quotation_number=row["quotation_number"],
        customer_name=row["customer_name"],
        email=row["email"],
        final_amount=row["final_amount"],
        status=row["status"],
        valid_until=row["valid_until"],
        converted_to_booking=bool(row["converted_to_booking"]),
        created_at=row["created_at"],
    )


def create_quotation(
    conn: sqlite3.Connection,
    quotation_number: str,
    customer_name: str = "",
    email: str = "",
    final_amount: float = 0.0,
    status: str = "Draft",
    valid_until: str | None = None,
    converted_to_booking: bool = False,
) -> int:
    cursor = conn.execute(
        """
        INSERT INTO quotations (
            quotation_number, customer_name, email, final_amount, status,
            valid_until, converted_to_booking
        )
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (
            quotation_number,
            customer_name,
            email,
            final_amount,
            status,
            valid_until,
            1 if converted_to_booking else 0,
        ),
    )
    return cursor.lastrowid


def get_quotation(conn: sqlite3.Connection, quotation_id: int) -> Quotation | None:
    cursor = conn.execute("SELECT * FROM quotations WHERE id = ?", (quotation_id,))
    row = cursor.fetchone()
    return _row_to_quotation(row) if row else None


def get_expirable_quotations(
    conn: sqlite3.Connection, today: date, tz: tzinfo | None = None,
) -> list[Quotation]:
    """Open, unconverted quotations whose validity ended before ``today``."""
    cursor = conn.execute(
        f"""
        SELECT * FROM quotations
        WHERE status NOT IN ({_placeholders(FINAL_QUOTATION_STATUSES)})
          AND converted_to_booking = 0
          AND valid_until IS NOT NULL AND valid_until != ''
        ORDER BY id
        """,
        FINAL_QUOTATION_STATUSES,
    )
    expirable = []
    for row in cursor.fetchall():
        quotation = _row_to_quotation(row)
        valid_until = _stored_date(quotation.valid_until, quotation.quotation_number, tz)
        if valid_until is not None and valid_until < today:
            expirable.append(quotation)
    return expirable


def set_quotation_status(conn: sqlite3.Connection, quotation_id: int, status: str) -> None:
    if status not in QUOTATION_STATUSES:
        raise ValueError(f"Unknown quotation status: {status}")
    with _writing(f"set status of quotation {quotation_id}"):
        conn.execute(
            "UPDATE quotations SET status = ?, updated_at = datetime('now') WHERE id = ?",
            (status, quotation_id),
        )


# ============================================================================
# Reminder rules
# ============================================================================


def _row_to_reminder_rule(row: sqlite3.Row) -> ReminderRule:
    return ReminderRule(
        id=row["id"],
        reminder_type=row["reminder_type"],
        days=row["days"],
        frequency=row["frequency"],
        subject=row["subject"],
        template=row["template"],
        enabled=bool(row["enabled"]),
        last_run_at=row["last_run_at"],
        next_run_at=row["next_run_at"],
        created_at=row["created_at"],
    )


def create_reminder_rule(
    conn: sqlite3.Connection,
    reminder_type: str,
    days: int = 1,
    frequency: str = "once",
    subject: str = "",
    template: str = "",
    enabled: bool = True,
) -> int:
    cursor = conn.execute(
        """
        INSERT INTO reminder_rules (reminder_type, days, frequency, subject, template, enabled)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (reminder_type, days, frequency, subject, template, 1 if enabled else 0),
    )
    return cursor.lastrowid


def get_reminder_rule(conn: sqlite3.Connection, rule_id: int) -> ReminderRule | None:
    cursor = conn.execute("SELECT * FROM reminder_rules WHERE id = ?", (rule_id,))
    row = cursor.fetchone()
    return _row_to_reminder_rule(row) if row else None


def get_reminder_rules(conn: sqlite3.Connection) -> list[ReminderRule]:
    cursor = conn.execute("SELECT * FROM reminder_rules ORDER BY id")
    return [_row_to_reminder_rule(row) for row in cursor.fetchall()]


def get_enabled_reminder_rules(conn: sqlite3.Connection) -> list[ReminderRule]:
    """Enabled rules in id order. The dispatch loop relies on this order."""
    cursor = conn.execute("SELECT * FROM reminder_rules WHERE enabled = 1 ORDER BY id")
    return [_row_to_reminder_rule(row) for row in cursor.fetchall()]


def set_reminder_rule_enabled(conn: sqlite3.Connection, rule_id: int, enabled: bool) -> None:
    conn.execute(
        "UPDATE reminder_rules SET enabled = ? WHERE id = ?",
        (1 if enabled else 0, rule_id),
    )


def set_reminder_rule_run(
    conn: sqlite3.Connection,
    rule_id: int,
    last_run_at: str,
    next_run_at: str | None = None,
) -> None:
    """Stamp a rule with the time of the reminder run that evaluated it."""
    with _writing(f"stamp reminder rule {rule_id}"):
        conn.execute(
            "UPDATE reminder_rules SET last_run_at = ?, next_run_at = ? WHERE id = ?",
            (last_run_at, next_run_at, rule_id),
        )
