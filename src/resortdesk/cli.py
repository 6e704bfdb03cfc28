"""CLI interface for local testing and administration."""

import argparse
import asyncio
import json
import sys
from datetime import datetime
from pathlib import Path

from . import db
from .config import load_config
from .coordinator import (
    CUSTOM_REMINDER_CHECK,
    EXPIRY_CHECK,
    OVERDUE_CHECK,
    REMINDER_CHECK,
    JobCoordinator,
    build_checks,
    run_daemon,
)
from .logging_setup import setup_logging
from .mailer import verify_email_config
from .reminder_policy import FREQUENCIES, REMINDER_TYPES

CHECK_NAMES = (OVERDUE_CHECK, REMINDER_CHECK, EXPIRY_CHECK, CUSTOM_REMINDER_CHECK)


def cmd_init(args):
    """Initialize the database."""
    config = load_config(Path(args.config) if args.config else None)
    config.db_path.parent.mkdir(parents=True, exist_ok=True)
    db.init_db(config.db_path)
    print(f"Database initialized at {config.db_path}")


def cmd_rule_list(args):
    """List reminder rules."""
    config = load_config(Path(args.config) if args.config else None)

    with db.get_db(config.db_path) as conn:
        rules = db.get_reminder_rules(conn)

    if not rules:
        print("No reminder rules configured")
        return

    for r in rules:
        state = "enabled" if r.enabled else "disabled"
        subject = r.subject or "(default subject)"
        print(f"[{r.id}] {r.reminder_type:7} {r.days:3}d {r.frequency:7} {state:9} {subject}")
        if args.verbose_rules and r.last_run_at:
            print(f"      last run {r.last_run_at}, next {r.next_run_at or '-'}")


def cmd_rule_add(args):
    """Add a reminder rule."""
    config = load_config(Path(args.config) if args.config else None)

    template = ""
    if args.template_file:
        template = Path(args.template_file).read_text()

    with db.get_db(config.db_path) as conn:
        rule_id = db.create_reminder_rule(
            conn,
            reminder_type=args.type,
            days=args.days,
            frequency=args.frequency,
            subject=args.subject or "",
            template=template,
            enabled=not args.disabled,
        )
    print(f"Reminder rule created: {rule_id}")


def _set_rule_enabled(args, enabled: bool):
    config = load_config(Path(args.config) if args.config else None)

    with db.get_db(config.db_path) as conn:
        if db.get_reminder_rule(conn, args.rule_id) is None:
            print(f"Reminder rule {args.rule_id} not found", file=sys.stderr)
            sys.exit(1)
        db.set_reminder_rule_enabled(conn, args.rule_id, enabled)
    print(f"Reminder rule {args.rule_id} {'enabled' if enabled else 'disabled'}")


def cmd_rule_enable(args):
    """Enable a reminder rule."""
    _set_rule_enabled(args, True)


def cmd_rule_disable(args):
    """Disable a reminder rule."""
    _set_rule_enabled(args, False)


def cmd_check(args):
    """Run one scheduled check immediately and print its counts."""
    config = load_config(Path(args.config) if args.config else None)

    now = None
    if args.date:
        try:
            now = datetime.fromisoformat(args.date)
        except ValueError:
            print(f"Error: invalid date {args.date!r} (expected YYYY-MM-DD)", file=sys.stderr)
            sys.exit(1)

    coordinator = JobCoordinator(config, build_checks(config))
    result = asyncio.run(coordinator.run_check(args.check, now=now))
    if result is None:
        print(f"The {args.check} check failed, see the log for details", file=sys.stderr)
        sys.exit(1)
    print(json.dumps(result, indent=2))


def cmd_invoice_show(args):
    """Show the reminder state of an invoice."""
    config = load_config(Path(args.config) if args.config else None)

    with db.get_db(config.db_path) as conn:
        invoice = db.get_invoice_by_number(conn, args.invoice_number)
    if not invoice:
        print(f"Invoice {args.invoice_number} not found", file=sys.stderr)
        sys.exit(1)

    print(f"Invoice: {invoice.invoice_number}")
    print(f"Customer: {invoice.customer_name} <{invoice.email}>")
    print(f"Status: {invoice.status}")
    print(f"Due: {invoice.due_date or '-'}")
    print(f"Balance: {invoice.balance:,.2f} of {invoice.final_amount:,.2f}")
    print(f"Reminders: {'enabled' if invoice.reminders_enabled else 'disabled'}")
    print(f"Last reminder: {invoice.last_reminder_sent_at or 'never'}")
    if invoice.custom_reminder_date:
        print(f"Custom reminder: {invoice.custom_reminder_date}")
    overrides = invoice.reminder_configs.to_dict()
    if overrides:
        print(f"Overrides: {json.dumps(overrides)}")


def cmd_email_verify(args):
    """Check SMTP connectivity and credentials."""
    config = load_config(Path(args.config) if args.config else None)
    if not config.email.smtp_host:
        print("Error: no SMTP host configured", file=sys.stderr)
        sys.exit(1)
    if verify_email_config(config.email):
        print(f"SMTP OK ({config.email.smtp_host}:{config.email.smtp_port})")
    else:
        print("SMTP check failed, see the log for details", file=sys.stderr)
        sys.exit(1)


def cmd_daemon(args):
    """Run the scheduler daemon in the foreground."""
    config = load_config(Path(args.config) if args.config else None)
    run_daemon(config)


def main(argv=None):
    parser = argparse.ArgumentParser(description="Resort billing reminder CLI")
    parser.add_argument("-c", "--config", help="Path to config file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose (DEBUG) logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # init
    subparsers.add_parser("init", help="Initialize database")

    # rule
    rule_parser = subparsers.add_parser("rule", help="Manage reminder rules")
    rule_subparsers = rule_parser.add_subparsers(dest="rule_action", required=True)

    rule_list_parser = rule_subparsers.add_parser("list", help="List reminder rules")
    rule_list_parser.add_argument("--runs", dest="verbose_rules", action="store_true", help="Show run stamps")

    rule_add_parser = rule_subparsers.add_parser("add", help="Add a reminder rule")
    rule_add_parser.add_argument("type", choices=REMINDER_TYPES, help="When the reminder fires relative to the due date")
    rule_add_parser.add_argument("-d", "--days", type=int, default=1, help="Days before/after the due date")
    rule_add_parser.add_argument("-f", "--frequency", choices=FREQUENCIES, default="once")
    rule_add_parser.add_argument("-s", "--subject", help="Subject line ({{ invoice_number }} etc. allowed)")
    rule_add_parser.add_argument("-t", "--template-file", help="File holding the email body template")
    rule_add_parser.add_argument("--disabled", action="store_true", help="Create the rule disabled")

    rule_enable_parser = rule_subparsers.add_parser("enable", help="Enable a reminder rule")
    rule_enable_parser.add_argument("rule_id", type=int)
    rule_disable_parser = rule_subparsers.add_parser("disable", help="Disable a reminder rule")
    rule_disable_parser.add_argument("rule_id", type=int)

    # check
    check_parser = subparsers.add_parser("check", help="Run a scheduled check now")
    check_parser.add_argument("check", choices=CHECK_NAMES)
    check_parser.add_argument("--date", help="Evaluate as of this date (YYYY-MM-DD, business timezone)")

    # invoice
    invoice_parser = subparsers.add_parser("invoice", help="Invoice reminder state")
    invoice_subparsers = invoice_parser.add_subparsers(dest="invoice_action", required=True)
    invoice_show_parser = invoice_subparsers.add_parser("show", help="Show reminder state of an invoice")
    invoice_show_parser.add_argument("invoice_number")

    # email
    email_parser = subparsers.add_parser("email", help="Email delivery")
    email_subparsers = email_parser.add_subparsers(dest="email_action", required=True)
    email_subparsers.add_parser("verify", help="Check SMTP connectivity and credentials")

    # daemon
    subparsers.add_parser("daemon", help="Run the scheduler in the foreground")

    args = parser.parse_args(argv)

    # Load config and setup logging (except for init which doesn't need full config)
    if args.command != "init":
        config = load_config(Path(args.config) if args.config else None)
        setup_logging(config, verbose=args.verbose, daemon_mode=args.command == "daemon")

    commands = {
        "init": cmd_init,
        "check": cmd_check,
        "daemon": cmd_daemon,
    }

    if args.command == "rule":
        rule_commands = {
            "list": cmd_rule_list,
            "add": cmd_rule_add,
            "enable": cmd_rule_enable,
            "disable": cmd_rule_disable,
        }
        rule_commands[args.rule_action](args)
    elif args.command == "invoice":
        invoice_commands = {
            "show": cmd_invoice_show,
        }
        invoice_commands[args.invoice_action](args)
    elif args.command == "email":
        email_commands = {
            "verify": cmd_email_verify,
        }
        email_commands[args.email_action](args)
    else:
        commands[args.command](args)


if __name__ == "__main__":
    main()
