from datetime import UTC, datetime
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings
from app.external.remnawave_api import RemnaWaveAPIError
from app.services import trial_notification_service
from app.services.trial_notification_service import TrialNotificationService


NOW = datetime(2026, 5, 1, 12, 0, tzinfo=UTC)


class FakeSessionFactory:
    def __init__(self):
        self.db = AsyncMock(spec=AsyncSession)

    def __call__(self):
        return self

    async def __aenter__(self):
        return self.db

    async def __aexit__(self, exc_type, exc, tb):
        return None


def _customer(customer_id):
    return SimpleNamespace(
        id=customer_id, telegram_id=100 + customer_id, language='ru', trial_inactive_notified_at=None
    )


@pytest.fixture
def candidates(monkeypatch):
    mock = AsyncMock(return_value=[])
    monkeypatch.setattr(trial_notification_service, 'get_trial_customers_for_inactive_notification', mock)
    return mock


async def test_notifies_only_never_connected_users(candidates):
    connected, idle, missing, broken, unreachable = (_customer(i) for i in range(1, 6))
    candidates.return_value = [connected, idle, missing, broken, unreachable]
    panel_users = {
        connected.telegram_id: SimpleNamespace(first_connected_at=NOW),
        idle.telegram_id: SimpleNamespace(first_connected_at=None),
        unreachable.telegram_id: SimpleNamespace(first_connected_at=None),
    }

    async def get_user(telegram_id):
        if telegram_id == broken.telegram_id:
            raise RemnaWaveAPIError('panel down')
        return panel_users.get(telegram_id)

    async def send(telegram_id, key, **kwargs):
        return telegram_id != unreachable.telegram_id

    remnawave_service = SimpleNamespace(get_user_by_telegram_id=get_user)
    notification_service = SimpleNamespace(send=AsyncMock(side_effect=send))
    service = TrialNotificationService(
        FakeSessionFactory(),
        remnawave_service,
        notification_service,
        Settings(TRIAL_INACTIVE_NOTIFICATION_ENABLED=True),
    )

    notified = await service.notify_inactive_trial_users(now=NOW)

    assert notified == 1
    assert idle.trial_inactive_notified_at == NOW
    assert unreachable.trial_inactive_notified_at is None
    assert connected.trial_inactive_notified_at is None
    assert notification_service.send.await_count == 2
    assert notification_service.send.await_args_list[0].args == (idle.telegram_id, 'trial_inactive_notification')


async def test_disabled_job_does_nothing(candidates):
    service = TrialNotificationService(
        FakeSessionFactory(), SimpleNamespace(), SimpleNamespace(), Settings(TRIAL_INACTIVE_NOTIFICATION_ENABLED=False)
    )

    assert await service.notify_inactive_trial_users(now=NOW) == 0
    candidates.assert_not_awaited()
