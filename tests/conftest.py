"""Shared test fixtures for resortdesk tests."""

import pytest

from resortdesk import db
from resortdesk.config import Config, EmailConfig


@pytest.fixture
def db_path(tmp_path):
    """Initialize a real SQLite database using schema.sql and return its path."""
    path = tmp_path / "test.db"
    db.init_db(path)
    return path


@pytest.fixture
def db_conn(db_path):
    """Yield a database connection with row factory set."""
    with db.get_db(db_path) as conn:
        yield conn


@pytest.fixture
def make_config(tmp_path):
    """Factory fixture that creates Config instances with tmp paths."""
    def _make_config(**overrides):
        defaults = {
            "db_path": tmp_path / "test.db",
            "timezone": "UTC",
            "email": EmailConfig(
                enabled=True,
                smtp_host="smtp.test",
                from_addr="billing@resort.test",
                from_name="Resort Billing",
            ),
        }
        defaults.update(overrides)
        return Config(**defaults)
    return _make_config


@pytest.fixture
def make_invoice(db_conn):
    """Factory fixture that inserts an invoice with reminder-ready defaults and returns its ID."""
    counter = {"n": 0}

    def _make_invoice(**overrides):
        counter["n"] += 1
        defaults = {
            "invoice_number": f"INV-{counter['n']:04d}",
            "customer_name": "Ada Guest",
            "email": "ada@guest.test",
            "final_amount": 100.0,
            "paid_amount": 0.0,
            "due_date": "2024-01-01",
            "status": "Sent",
        }
        defaults.update(overrides)
        invoice_id = db.create_invoice(db_conn, **defaults)
        db_conn.commit()
        return invoice_id
    return _make_invoice
