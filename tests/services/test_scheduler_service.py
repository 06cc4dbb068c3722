from types import SimpleNamespace
from unittest.mock import AsyncMock

from app.config import Settings
from app.services.scheduler_service import JOB_CRYPTO, JOB_TRIAL_INACTIVE, JOB_YOOKASSA, setup_scheduler


def _reconciliation_service():
    return SimpleNamespace(check_crypto_invoices=AsyncMock(), check_yookassa_invoices=AsyncMock())


def test_no_jobs_without_providers():
    scheduler = setup_scheduler(_reconciliation_service(), None, Settings())

    assert scheduler.get_jobs() == []


def test_jobs_follow_enabled_providers():
    config = Settings(
        CRYPTO_PAY_ENABLED=True,
        CRYPTO_PAY_TOKEN='token',
        CRYPTO_CHECK_INTERVAL_SECONDS=7,
        YOOKASSA_ENABLED=True,
        YOOKASSA_SHOP_ID='shop',
        YOOKASSA_SECRET_KEY='secret',
        TRIAL_INACTIVE_NOTIFICATION_ENABLED=True,
    )
    trial_service = SimpleNamespace(notify_inactive_trial_users=AsyncMock())

    scheduler = setup_scheduler(_reconciliation_service(), trial_service, config)

    jobs = {job.id: job for job in scheduler.get_jobs()}
    assert set(jobs) == {JOB_CRYPTO, JOB_YOOKASSA, JOB_TRIAL_INACTIVE}
    assert jobs[JOB_CRYPTO].trigger.interval.total_seconds() == 7
    assert all(job.max_instances == 1 for job in jobs.values())


def test_enabled_flag_without_credentials_adds_no_job():
    config = Settings(YOOKASSA_ENABLED=True, CRYPTO_PAY_ENABLED=True)

    scheduler = setup_scheduler(_reconciliation_service(), None, config)

    assert scheduler.get_jobs() == []
