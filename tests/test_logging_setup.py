"""Tests for logging_setup.py module."""

import asyncio
import logging
from logging.handlers import RotatingFileHandler

import pytest

from resortdesk.config import Config, LoggingConfig
from resortdesk.logging_setup import BillingContextFilter, log_context, reset_logging, setup_logging


@pytest.fixture(autouse=True)
def _clean_logging():
    reset_logging()
    yield
    reset_logging()


class TestSetupLogging:
    def test_console_only(self):
        setup_logging(Config())
        logger = logging.getLogger("resortdesk")
        assert logger.level == logging.INFO
        assert len(logger.handlers) == 1
        assert isinstance(logger.handlers[0], logging.StreamHandler)

    def test_verbose_overrides_level(self):
        setup_logging(Config(), verbose=True)
        assert logging.getLogger("resortdesk").level == logging.DEBUG

    def test_rotating_file(self, tmp_path):
        log_file = tmp_path / "logs" / "resortdesk.log"
        config = Config(logging=LoggingConfig(output="both", file=str(log_file), max_size_mb=1))

        setup_logging(config, daemon_mode=True)

        handlers = logging.getLogger("resortdesk").handlers
        rotating = [h for h in handlers if isinstance(h, RotatingFileHandler)]
        assert len(handlers) == 2
        assert rotating[0].maxBytes == 1024 * 1024
        assert log_file.parent.exists()

    def test_second_call_is_noop(self):
        setup_logging(Config())
        setup_logging(Config(), verbose=True)
        assert logging.getLogger("resortdesk").level == logging.INFO


def _context_of(record_name="resortdesk.billing_scheduler"):
    record = logging.LogRecord(record_name, logging.INFO, __file__, 1, "message", None, None)
    BillingContextFilter().filter(record)
    return record.billing_context


class TestBillingContext:
    def test_empty_outside_a_check(self):
        assert _context_of() == ""

    def test_check_and_invoice(self):
        with log_context(check="reminders"):
            assert _context_of() == " [reminders]"
            with log_context(invoice="INV-0042"):
                assert _context_of() == " [reminders INV-0042]"
            assert _context_of() == " [reminders]"
        assert _context_of() == ""

    @pytest.mark.asyncio
    async def test_follows_work_into_threads(self):
        with log_context(check="custom_reminders", invoice="INV-0007"):
            context = await asyncio.to_thread(_context_of)
        assert context == " [custom_reminders INV-0007]"

    def test_written_to_log_file(self, tmp_path):
        log_file = tmp_path / "resortdesk.log"
        setup_logging(Config(logging=LoggingConfig(output="file", file=str(log_file), rotate=False)))

        with log_context(check="overdue", invoice="INV-0003"):
            logging.getLogger("resortdesk.billing_scheduler").info("Marked overdue")
        logging.getLogger("resortdesk.coordinator").info("Idle")

        first, second = log_file.read_text().splitlines()
        assert first.endswith("] [overdue INV-0003] Marked overdue")
        assert second.endswith("] Idle")
