"""Recurring job coordinator for the billing checks.

Runs on a single asyncio event loop. Each check has a cron timer in the
business timezone. A firing that arrives while the previous run of the same
check is still going is skipped. The two reminder-sending checks share one
lock, so one waits for the other instead of both mailing the same invoice.
Sync checks and database work run in worker threads via asyncio.to_thread.
A check that raises is logged and alerted, and its timer keeps running.
"""

import asyncio
import fcntl
import inspect
import logging
import os
import signal
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Awaitable, Callable

from croniter import croniter

from . import db
from .alerts import send_alert
from .billing_scheduler import (
    business_tz,
    check_custom_reminders,
    check_expired_quotations,
    check_overdue_invoices,
    check_reminders,
)
from .config import Config, load_config
from .logging_setup import log_context

logger = logging.getLogger("resortdesk.coordinator")

OVERDUE_CHECK = "overdue"
REMINDER_CHECK = "reminders"
EXPIRY_CHECK = "expiry"
CUSTOM_REMINDER_CHECK = "custom_reminders"

# Re-run shortly after startup to catch up on anything missed while down
STARTUP_CHECKS = (OVERDUE_CHECK, REMINDER_CHECK, EXPIRY_CHECK)

# Checks that mail guests; they run one at a time
SENDING_CHECKS = (REMINDER_CHECK, CUSTOM_REMINDER_CHECK)


def _now(tz=None):
    """Current time; thin wrapper for testability."""
    return datetime.now(tz)


@dataclass
class ScheduledCheck:
    name: str
    cron: str  # evaluated in the business timezone
    func: Callable[..., dict | Awaitable[dict]]


def build_checks(config: Config) -> dict[str, ScheduledCheck]:
    sched = config.scheduler
    checks = [
        ScheduledCheck(OVERDUE_CHECK, sched.overdue_cron, check_overdue_invoices),
        ScheduledCheck(REMINDER_CHECK, sched.reminder_cron, check_reminders),
        ScheduledCheck(EXPIRY_CHECK, sched.expiry_cron, check_expired_quotations),
        ScheduledCheck(CUSTOM_REMINDER_CHECK, sched.custom_reminder_cron, check_custom_reminders),
    ]
    return {check.name: check for check in checks}


def _summarize(result: dict) -> str:
    return ", ".join(f"{k}={v}" for k, v in result.items() if v) or "nothing to do"


class JobCoordinator:
    """Owns the timers for the recurring checks and serializes runs per check."""

    def __init__(self, config: Config, checks: dict[str, ScheduledCheck] | None = None):
        self.config = config
        self.checks = checks if checks is not None else build_checks(config)
        self.last_results: dict[str, dict] = {}
        send_lock = asyncio.Lock()
        self._locks = {
            name: send_lock if name in SENDING_CHECKS else asyncio.Lock()
            for name in self.checks
        }
        self._running: set[str] = set()
        self._timers: list[asyncio.Task] = []
        self._runs: set[asyncio.Task] = set()
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    def start(self) -> bool:
        """Register the recurring timers and the startup catch-up run.

        Must be called from inside a running event loop. Returns False if the
        coordinator was already started.
        """
        if self._started:
            logger.debug("Coordinator already started")
            return False
        self._started = True

        for check in self.checks.values():
            self._timers.append(
                asyncio.create_task(self._timer(check), name=f"timer-{check.name}")
            )
            logger.info("Scheduled %s check (%s %s)", check.name, check.cron, self.config.timezone)

        if self.config.scheduler.run_on_startup:
            self._timers.append(asyncio.create_task(self._startup_run(), name="startup-run"))
        return True

    async def stop(self) -> None:
        """Cancel the timers, then wait for in-flight runs to finish."""
        for task in self._timers:
            task.cancel()
        await asyncio.gather(*self._timers, return_exceptions=True)
        await asyncio.gather(*list(self._runs), return_exceptions=True)
        self._timers.clear()
        self._runs.clear()
        self._started = False

    async def _timer(self, check: ScheduledCheck) -> None:
        tz = business_tz(self.config)
        try:
            next_run = croniter(check.cron, _now(tz)).get_next(datetime)
        except Exception as e:
            logger.error("Invalid cron %r for %s check, not scheduling: %s", check.cron, check.name, e)
            return

        while True:
            delay = max((next_run - _now(tz)).total_seconds(), 0.0)
            await asyncio.sleep(delay)
            self._spawn(check.name)
            next_run = croniter(check.cron, max(next_run, _now(tz))).get_next(datetime)

    def _spawn(self, name: str) -> asyncio.Task:
        task = asyncio.create_task(self.run_check(name), name=f"check-{name}")
        self._runs.add(task)
        task.add_done_callback(self._runs.discard)
        return task

    async def _startup_run(self) -> None:
        await asyncio.sleep(self.config.scheduler.startup_delay)
        logger.info("Running startup checks")
        for name in STARTUP_CHECKS:
            if name in self.checks:
                # The run outlives cancellation of the startup task
                await asyncio.shield(self._spawn(name))

    async def run_check(self, name: str, now: datetime | None = None) -> dict | None:
        """Run one check now. Returns its counts, or None if skipped or failed.

        A check that is already running is skipped. A check that shares its
        lock with a different running check waits for it to finish. Never
        raises for failures inside the check itself.
        """
        if name not in self.checks:
            raise ValueError(f"Unknown check: {name}")

        if name in self._running:
            logger.warning("Skipping %s check: previous run still in progress", name)
            return None

        self._running.add(name)
        try:
            async with self._locks[name]:
                with log_context(check=name):
                    return await self._execute(self.checks[name], now)
        finally:
            self._running.discard(name)

    async def _execute(self, check: ScheduledCheck, now: datetime | None) -> dict | None:
        name = check.name
        logger.debug("Running %s check", name)
        try:
            conn = await asyncio.to_thread(db.connect, self.config.db_path)
            try:
                if inspect.iscoroutinefunction(check.func):
                    result = await check.func(conn, self.config, now=now)
                else:
                    result = await asyncio.to_thread(check.func, conn, self.config, now=now)
                await asyncio.to_thread(conn.commit)
            finally:
                await asyncio.to_thread(conn.close)
        except Exception as e:
            logger.error("Error running %s check: %s", name, e)
            await asyncio.to_thread(
                send_alert, self.config, f"The {name} check failed: {e}",
                title="Billing check failed", tags="warning",
            )
            return None

        self.last_results[name] = result
        logger.info("%s check finished: %s", name, _summarize(result))

        failures = result.get("delivery_failures", 0)
        if failures:
            await asyncio.to_thread(
                send_alert, self.config,
                f"{failures} payment reminder(s) could not be delivered during the {name} check",
                title="Reminder delivery failures", tags="email",
            )
        return result


# Process-wide coordinator used by start_scheduler()
_coordinator: JobCoordinator | None = None


def start_scheduler(config: Config) -> JobCoordinator:
    """Start the process-wide coordinator on the running loop.

    Calling it again returns the already-running coordinator.
    """
    global _coordinator
    if _coordinator is None:
        _coordinator = JobCoordinator(config)
    _coordinator.start()
    return _coordinator


def reset_scheduler() -> None:
    """Forget the process-wide coordinator (for tests)."""
    global _coordinator
    _coordinator = None


def _request_shutdown(signum: int, stop: asyncio.Event) -> None:
    logger.info("Received signal %d, shutting down gracefully...", signum)
    stop.set()


async def _serve(config: Config) -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, _request_shutdown, sig, stop)

    coordinator = start_scheduler(config)
    await stop.wait()
    await coordinator.stop()


def run_daemon(config: Config) -> None:
    """
    Run the billing scheduler until SIGTERM/SIGINT.
    Only one daemon per host; a second instance exits immediately.
    """
    lock_path = Path(config.scheduler.lock_path)
    lock_file = open(lock_path, "w")
    try:
        fcntl.flock(lock_file, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError:
        logger.error("Another scheduler daemon is already running. Exiting.")
        lock_file.close()
        return

    # Write PID to lock file for debugging
    lock_file.write(str(os.getpid()))
    lock_file.flush()

    config.db_path.parent.mkdir(parents=True, exist_ok=True)
    db.init_db(config.db_path)

    logger.info("STARTUP Billing scheduler starting (pid: %d)", os.getpid())
    logger.info("STARTUP Database: %s", config.db_path)
    logger.info("STARTUP Timezone: %s", config.timezone)
    logger.info("STARTUP Email delivery: %s", "enabled" if config.email.enabled else "disabled")
    logger.info(
        "STARTUP Startup catch-up run: %s",
        f"after {config.scheduler.startup_delay:g}s" if config.scheduler.run_on_startup else "off",
    )

    try:
        asyncio.run(_serve(config))
    finally:
        fcntl.flock(lock_file, fcntl.LOCK_UN)
        lock_file.close()

    logger.info("Shutdown complete.")


def main():
    """Entry point for the scheduler daemon."""
    import argparse

    from .logging_setup import setup_logging

    parser = argparse.ArgumentParser(description="Resort billing reminder scheduler")
    parser.add_argument("-c", "--config", help="Path to config file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    args = parser.parse_args()

    config = load_config(Path(args.config) if args.config else None)
    setup_logging(config, verbose=args.verbose, daemon_mode=True)
    run_daemon(config)


if __name__ == "__main__":
    main()
