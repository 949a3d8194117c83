"""
Lifecycle Scheduler - advances premium subscriptions through
expiry -> grace period -> free, and sends lifecycle notifications.

Two recurring jobs:
1. Downgrade job (default every 15 minutes): premium, active accounts whose
   subscription_expires_at is older than the grace period are downgraded
   to free, notified and audited.
2. Notification job (default every 24 hours): expiration warnings for
   premium accounts expiring within the look-ahead window, and grace period
   notices for accounts that expired within the last 24 hours.

Each account runs in its own session and transaction; one account's failure
is logged and audited with success=false and the batch continues.

Each job type has an in-process "running" flag. A tick that fires while the
previous run of the same job is still in flight is skipped. This guard is
per process only: running several scheduler processes against the same
database duplicates notifications. Downgrades stay idempotent because the
write is conditional on the selection predicate.

Run as: python -m tier_engine.jobs.tier_scheduler [--once]

Configuration: see tier_engine.config.settings
"""

import argparse
import logging
import signal
import sys
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from tier_engine.config.settings import TierEngineSettings, get_settings
from tier_engine.entitlements.audit import AuditAction, AuditResource, AuditSink, DatabaseAuditSink
from tier_engine.entitlements.errors import NotificationDeliveryFailedError
from tier_engine.entitlements.notifications import (
    EmailNotificationDispatcher,
    NotificationDispatcher,
    NotificationIntent,
)
from tier_engine.entitlements.resolver import TierStatusResolver
from tier_engine.entitlements.service import TierService
from tier_engine.models.base import as_utc, utcnow
from tier_engine.models.tier_history import TierChangeReason
from tier_engine.models.user import SubscriptionAccount, SubscriptionPlan

logger = logging.getLogger(__name__)

DOWNGRADE_JOB = "downgrade"
NOTIFICATION_JOB = "notification"
GRACE_NOTICE_LOOKBACK = timedelta(days=1)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class DowngradeJobStats:
    """Statistics for one downgrade run."""

    candidates: int = 0
    downgraded: int = 0
    skipped: int = 0
    notifications_failed: int = 0
    errors: int = 0
    start_time: datetime = field(default_factory=_now)

    def to_dict(self) -> dict:
        duration = (_now() - self.start_time).total_seconds()
        return {
            "candidates": self.candidates,
            "downgraded": self.downgraded,
            "skipped": self.skipped,
            "notifications_failed": self.notifications_failed,
            "errors": self.errors,
            "duration_seconds": round(duration, 2),
        }


@dataclass
class NotificationJobStats:
    """Statistics for one notification run."""

    warnings_sent: int = 0
    warnings_failed: int = 0
    grace_notices_sent: int = 0
    grace_notices_failed: int = 0
    errors: int = 0
    start_time: datetime = field(default_factory=_now)

    def to_dict(self) -> dict:
        duration = (_now() - self.start_time).total_seconds()
        return {
            "warnings_sent": self.warnings_sent,
            "warnings_failed": self.warnings_failed,
            "grace_notices_sent": self.grace_notices_sent,
            "grace_notices_failed": self.grace_notices_failed,
            "errors": self.errors,
            "duration_seconds": round(duration, 2),
        }


class TierScheduler:
    """
    Owns the two lifecycle jobs, their running flags and their timer threads.

    Construct once per process and pass it to whoever needs to stop it.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        settings: Optional[TierEngineSettings] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        audit_sink: Optional[AuditSink] = None,
        clock: Optional[Callable[[], datetime]] = None,
        tier_service: Optional[TierService] = None,
        resolver: Optional[TierStatusResolver] = None,
    ):
        self._session_factory = session_factory
        self._settings = settings or get_settings()
        self._dispatcher = dispatcher or EmailNotificationDispatcher(
            grace_period_days=self._settings.grace_period_days
        )
        self._audit = audit_sink or DatabaseAuditSink(session_factory)
        self._clock = clock or utcnow
        self._tier_service = tier_service or TierService(settings=self._settings, audit_sink=self._audit)
        self._resolver = resolver or TierStatusResolver(settings=self._settings)

        self._flags_lock = threading.Lock()
        self._running = {DOWNGRADE_JOB: False, NOTIFICATION_JOB: False}
        self._stop_event = threading.Event()
        self._threads: List[threading.Thread] = []
        self._runs: List[threading.Thread] = []

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def start(self) -> bool:
        """
        Run both jobs now and then on their intervals.

        Returns False when the scheduler is disabled or already started.
        """
        if not self._settings.scheduler_enabled:
            logger.info("Tier scheduler disabled via ENABLE_TIER_SCHEDULER")
            return False
        if self.is_running:
            logger.warning("Tier scheduler already started")
            return False

        self._stop_event.clear()
        self._runs = []
        self._threads = [
            threading.Thread(
                target=self._loop,
                args=(self.run_downgrade_job_once, self._settings.downgrade_interval_seconds),
                name="tier-scheduler-downgrade",
                daemon=True,
            ),
            threading.Thread(
                target=self._loop,
                args=(self.run_notification_job_once, self._settings.notification_interval_seconds),
                name="tier-scheduler-notification",
                daemon=True,
            ),
        ]
        self._dispatch(self.run_downgrade_job_once)
        self._dispatch(self.run_notification_job_once)
        for thread in self._threads:
            thread.start()

        logger.info("Tier scheduler started", extra={
            "downgrade_interval_seconds": self._settings.downgrade_interval_seconds,
            "notification_interval_seconds": self._settings.notification_interval_seconds,
        })
        return True

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop scheduling new runs and wait for in-flight runs to finish."""
        self._stop_event.set()
        for thread in self._threads:
            thread.join(timeout)
        with self._flags_lock:
            runs = list(self._runs)
        for run in runs:
            run.join(timeout)
        logger.info("Tier scheduler stopped")

    def wait(self) -> None:
        """Block until stop() has been called and every timer and in-flight run exits."""
        while self.is_running:
            self._stop_event.wait(1.0)
            for thread in self._threads:
                thread.join(0.1)
        with self._flags_lock:
            runs = list(self._runs)
        for run in runs:
            run.join()

    def _loop(self, job: Callable, interval_seconds: float) -> None:
        # Fixed-rate ticks, each run on its own thread; a tick that lands while
        # the previous run of the same job is in flight is skipped by _acquire.
        next_tick = time.monotonic()
        while True:
            next_tick = max(next_tick + interval_seconds, time.monotonic())
            if self._stop_event.wait(next_tick - time.monotonic()):
                return
            self._dispatch(job)

    def _dispatch(self, job: Callable) -> None:
        run = threading.Thread(
            target=job,
            name=f"tier-scheduler-{getattr(job, '__name__', 'job')}",
            daemon=True,
        )
        with self._flags_lock:
            if self._stop_event.is_set():
                return
            self._runs = [t for t in self._runs if t.is_alive()]
            self._runs.append(run)
            run.start()

    def _acquire(self, job_name: str) -> bool:
        with self._flags_lock:
            if self._running[job_name]:
                return False
            self._running[job_name] = True
            return True

    def _release(self, job_name: str) -> None:
        with self._flags_lock:
            self._running[job_name] = False

    # ------------------------------------------------------------------
    # Downgrade job
    # ------------------------------------------------------------------

    def run_downgrade_job_once(self) -> Optional[DowngradeJobStats]:
        """
        Downgrade accounts whose grace period is over.

        Returns None when a previous downgrade run is still in flight.
        """
        if not self._acquire(DOWNGRADE_JOB):
            logger.warning("Downgrade job is already running; skipping this tick")
            return None

        stats = DowngradeJobStats()
        try:
            now = self._clock()
            candidates = self.find_downgrade_candidates(now)
            stats.candidates = len(candidates)

            if not candidates:
                logger.debug("Downgrade job: no candidates found")
            for user_id in candidates:
                self._downgrade_account(user_id, now, stats)
        except Exception:
            stats.errors += 1
            logger.error("Downgrade job failed", exc_info=True)
        finally:
            self._release(DOWNGRADE_JOB)

        logger.info("Downgrade job complete", extra={"stats": stats.to_dict()})
        return stats

    def find_downgrade_candidates(self, now: datetime) -> List[str]:
        """Premium, active accounts expired for longer than the grace period."""
        cutoff = as_utc(now) - timedelta(days=self._settings.grace_period_days)
        session = self._session_factory()
        try:
            rows = session.query(SubscriptionAccount.id).filter(
                SubscriptionAccount.subscription_plan == SubscriptionPlan.PREMIUM.value,
                SubscriptionAccount.is_active.is_(True),
                SubscriptionAccount.subscription_expires_at.isnot(None),
                SubscriptionAccount.subscription_expires_at < cutoff,
            ).order_by(
                SubscriptionAccount.subscription_expires_at
            ).limit(self._settings.downgrade_batch_size).all()
            return [row.id for row in rows]
        finally:
            session.close()

    def _downgrade_account(self, user_id: str, now: datetime, stats: DowngradeJobStats) -> None:
        session = self._session_factory()
        try:
            downgraded = self._tier_service.perform_automatic_downgrade(session, user_id, now)
            if not downgraded:
                stats.skipped += 1
                return
            stats.downgraded += 1

            account = session.get(SubscriptionAccount, user_id)
            delivered = self._dispatcher.tier_changed(
                account,
                SubscriptionPlan.PREMIUM.value,
                SubscriptionPlan.FREE.value,
                TierChangeReason.EXPIRATION,
            )

            details = {
                "previous_plan": SubscriptionPlan.PREMIUM.value,
                "new_plan": SubscriptionPlan.FREE.value,
                "notification_delivered": delivered,
            }
            if not delivered:
                stats.notifications_failed += 1
                error = NotificationDeliveryFailedError(user_id, NotificationIntent.TIER_CHANGED)
                details["error"] = str(error)
                details["error_code"] = error.error_code

            self._audit.log(
                user_id=user_id,
                action=AuditAction.TIER_DOWNGRADE_AUTOMATIC,
                resource=AuditResource.TIER_SCHEDULER,
                details=details,
                success=delivered,
            )
        except Exception as e:
            session.rollback()
            stats.errors += 1
            logger.error("Downgrade job: failed processing account", extra={
                "user_id": user_id,
                "error": str(e),
            }, exc_info=True)
            self._audit.log(
                user_id=user_id,
                action=AuditAction.TIER_DOWNGRADE_AUTOMATIC,
                resource=AuditResource.TIER_SCHEDULER,
                details={"error": str(e)},
                success=False,
            )
        finally:
            session.close()

    # ------------------------------------------------------------------
    # Notification job
    # ------------------------------------------------------------------

    def run_notification_job_once(self) -> Optional[NotificationJobStats]:
        """
        Send expiration warnings and grace period notices.

        Returns None when a previous notification run is still in flight.
        """
        if not self._acquire(NOTIFICATION_JOB):
            logger.warning("Notification job is already running; skipping this tick")
            return None

        stats = NotificationJobStats()
        try:
            now = self._clock()
            self._send_expiration_warnings(now, stats)
            self._send_grace_notices(now, stats)
        except Exception:
            stats.errors += 1
            logger.error("Notification job failed", exc_info=True)
        finally:
            self._release(NOTIFICATION_JOB)

        logger.info("Notification job complete", extra={"stats": stats.to_dict()})
        return stats

    def _find_premium_expiring_between(self, start: datetime, end: datetime, include_end: bool) -> List[str]:
        session = self._session_factory()
        try:
            upper = (
                SubscriptionAccount.subscription_expires_at <= end if include_end
                else SubscriptionAccount.subscription_expires_at < end
            )
            rows = session.query(SubscriptionAccount.id).filter(
                SubscriptionAccount.subscription_plan == SubscriptionPlan.PREMIUM.value,
                SubscriptionAccount.is_active.is_(True),
                SubscriptionAccount.subscription_expires_at.isnot(None),
                SubscriptionAccount.subscription_expires_at >= start,
                upper,
            ).order_by(
                SubscriptionAccount.subscription_expires_at
            ).limit(self._settings.notification_batch_size).all()
            return [row.id for row in rows]
        finally:
            session.close()

    def _send_expiration_warnings(self, now: datetime, stats: NotificationJobStats) -> None:
        horizon = now + timedelta(days=self._settings.expiration_warning_days)
        for user_id in self._find_premium_expiring_between(now, horizon, include_end=True):
            session = self._session_factory()
            try:
                account = session.get(SubscriptionAccount, user_id)
                tier_status = self._resolver.resolve_account(session, account, now)
                days_left = tier_status.days_until_expiration or 0

                delivered = self._dispatcher.expiration_warning(account, days_left)
                if delivered:
                    stats.warnings_sent += 1
                else:
                    stats.warnings_failed += 1
                self._audit_notification(
                    user_id,
                    AuditAction.SUBSCRIPTION_EXPIRATION_WARNING,
                    NotificationIntent.EXPIRATION_WARNING,
                    {"days_left": days_left},
                    delivered,
                )
            except Exception as e:
                stats.errors += 1
                logger.error("Notification job (warning): failed for account", extra={
                    "user_id": user_id,
                    "error": str(e),
                }, exc_info=True)
                self._audit.log(
                    user_id=user_id,
                    action=AuditAction.SUBSCRIPTION_EXPIRATION_WARNING,
                    resource=AuditResource.TIER_SCHEDULER,
                    details={"error": str(e)},
                    success=False,
                )
            finally:
                session.close()

    def _send_grace_notices(self, now: datetime, stats: NotificationJobStats) -> None:
        since = now - GRACE_NOTICE_LOOKBACK
        for user_id in self._find_premium_expiring_between(since, now, include_end=False):
            session = self._session_factory()
            try:
                account = session.get(SubscriptionAccount, user_id)
                tier_status = self._resolver.resolve_account(session, account, now)
                if not (tier_status.grace_period_active and tier_status.grace_period_expires_at):
                    continue

                deadline = tier_status.grace_period_expires_at
                delivered = self._dispatcher.grace_period_started(account, deadline)
                if delivered:
                    stats.grace_notices_sent += 1
                else:
                    stats.grace_notices_failed += 1
                self._audit_notification(
                    user_id,
                    AuditAction.GRACE_PERIOD_ACTIVATED,
                    NotificationIntent.GRACE_PERIOD_STARTED,
                    {"grace_period_expires_at": deadline.isoformat()},
                    delivered,
                )
            except Exception as e:
                stats.errors += 1
                logger.error("Notification job (grace): failed for account", extra={
                    "user_id": user_id,
                    "error": str(e),
                }, exc_info=True)
                self._audit.log(
                    user_id=user_id,
                    action=AuditAction.GRACE_PERIOD_ACTIVATED,
                    resource=AuditResource.TIER_SCHEDULER,
                    details={"error": str(e)},
                    success=False,
                )
            finally:
                session.close()

    def _audit_notification(
        self,
        user_id: str,
        action: str,
        intent: str,
        details: dict,
        delivered: bool,
    ) -> None:
        if not delivered:
            error = NotificationDeliveryFailedError(user_id, intent)
            details = {**details, "error": str(error), "error_code": error.error_code}
        self._audit.log(
            user_id=user_id,
            action=action,
            resource=AuditResource.TIER_SCHEDULER,
            details=details,
            success=delivered,
        )


def main(argv: Optional[List[str]] = None) -> int:
    """Standalone worker entry point."""
    from tier_engine.database.session import get_session_factory

    parser = argparse.ArgumentParser(description="Tier lifecycle scheduler")
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run the downgrade and notification jobs once and exit",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    settings = get_settings()
    scheduler = TierScheduler(get_session_factory(), settings=settings)

    if args.once:
        downgrade_stats = scheduler.run_downgrade_job_once()
        notification_stats = scheduler.run_notification_job_once()
        failed = any(s is not None and s.errors for s in (downgrade_stats, notification_stats))
        return 1 if failed else 0

    def _handle_signal(signum, frame):
        logger.info("Shutdown signal received", extra={"signal": signum})
        scheduler.stop(timeout=0)

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    if not scheduler.start():
        return 0

    scheduler.wait()
    logger.info("Tier scheduler worker exited")
    return 0


if __name__ == "__main__":
    sys.exit(main())
