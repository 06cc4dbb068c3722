from __future__ import annotations

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from app.config import Settings, settings as default_settings
from app.services.reconciliation_service import ReconciliationService
from app.services.trial_notification_service import TrialNotificationService


logger = structlog.get_logger(__name__)

JOB_CRYPTO = 'check_crypto_invoices'
JOB_YOOKASSA = 'check_yookassa_invoices'
JOB_TRIAL_INACTIVE = 'notify_inactive_trial_users'


def setup_scheduler(
    reconciliation_service: ReconciliationService,
    trial_notification_service: TrialNotificationService | None = None,
    config: Settings | None = None,
) -> AsyncIOScheduler:
    """Register the polling jobs; every job runs one instance at a time."""
    config = config or default_settings
    scheduler = AsyncIOScheduler(timezone='UTC')
    job_defaults = {'max_instances': 1, 'coalesce': True}

    if config.is_crypto_pay_enabled():
        scheduler.add_job(
            reconciliation_service.check_crypto_invoices,
            IntervalTrigger(seconds=config.CRYPTO_CHECK_INTERVAL_SECONDS),
            id=JOB_CRYPTO,
            **job_defaults,
        )

    if config.is_yookassa_enabled():
        scheduler.add_job(
            reconciliation_service.check_yookassa_invoices,
            IntervalTrigger(seconds=config.YOOKASSA_CHECK_INTERVAL_SECONDS),
            id=JOB_YOOKASSA,
            **job_defaults,
        )

    if trial_notification_service is not None and config.TRIAL_INACTIVE_NOTIFICATION_ENABLED:
        scheduler.add_job(
            trial_notification_service.notify_inactive_trial_users,
            IntervalTrigger(minutes=config.TRIAL_INACTIVE_CHECK_INTERVAL_MINUTES),
            id=JOB_TRIAL_INACTIVE,
            **job_defaults,
        )

    logger.info('Scheduler configured', jobs=[job.id for job in scheduler.get_jobs()])
    return scheduler
