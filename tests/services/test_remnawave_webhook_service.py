from datetime import UTC, datetime
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings
from app.services import remnawave_webhook_service
from app.services.notification_service import CALLBACK_BUY
from app.services.recurring_billing_service import RecurringChargeResult
from app.services.remnawave_webhook_service import RemnawaveWebhookService, WebhookOutcome
from app.webapi.schemas.webhooks import RemnawaveWebhookPayload


def _payload(event: str, *, connected: bool = True, telegram_id: int | None = 100):
    data = {'uuid': 'u-1', 'username': '1_100', 'status': 'ACTIVE', 'expireAt': '2026-05-02T12:00:00Z'}
    if telegram_id is not None:
        data['telegramId'] = telegram_id
    if connected:
        data['firstConnectedAt'] = '2026-04-01T08:00:00Z'
    return RemnawaveWebhookPayload.model_validate({'event': event, 'data': data, 'timestamp': '2026-05-01T12:00:00Z'})


def _customer(*, recurring: bool = False):
    return SimpleNamespace(
        id=1,
        telegram_id=100,
        language='ru',
        recurring_enabled=recurring,
        payment_method_id='pm-1' if recurring else None,
        has_recurring_method=recurring,
    )


def _service(*, recurring_enabled: bool = True):
    notification_service = SimpleNamespace(send=AsyncMock(return_value=True), button=MagicMock(return_value='kb'))
    recurring_billing_service = SimpleNamespace(
        charge=AsyncMock(return_value=RecurringChargeResult.SUCCEEDED),
        notify_upcoming_charge=AsyncMock(),
    )
    winback_service = SimpleNamespace(issue_offer=AsyncMock())
    service = RemnawaveWebhookService(
        notification_service,
        recurring_billing_service=recurring_billing_service,
        winback_service=winback_service,
        config=Settings(RECURRING_PAYMENTS_ENABLED=recurring_enabled),
    )
    return service, notification_service, recurring_billing_service, winback_service


@pytest.fixture
def customer_lookup(monkeypatch):
    mock = AsyncMock(return_value=_customer())
    monkeypatch.setattr(remnawave_webhook_service, 'get_customer_by_telegram_id', mock)
    return mock


async def test_unknown_events_are_ignored(customer_lookup):
    service, notification_service, _, _ = _service()

    outcome = await service.handle(AsyncMock(spec=AsyncSession), _payload('user.expires_in_48_hours'))

    assert outcome is WebhookOutcome.IGNORED
    customer_lookup.assert_not_awaited()
    notification_service.send.assert_not_awaited()


@pytest.mark.parametrize('event', ['user.expires_in_24_hours', 'user.expired', 'user.expired_24_hours_ago'])
async def test_never_connected_users_are_skipped(customer_lookup, event):
    service, notification_service, recurring, winback = _service()

    outcome = await service.handle(AsyncMock(spec=AsyncSession), _payload(event, connected=False))

    assert outcome is WebhookOutcome.NOT_CONNECTED
    customer_lookup.assert_not_awaited()
    notification_service.send.assert_not_awaited()
    recurring.charge.assert_not_awaited()
    winback.issue_offer.assert_not_awaited()


async def test_missing_customer(customer_lookup):
    customer_lookup.return_value = None
    service, _, _, _ = _service()

    outcome = await service.handle(AsyncMock(spec=AsyncSession), _payload('user.expired'))

    assert outcome is WebhookOutcome.CUSTOMER_NOT_FOUND


async def test_payload_without_telegram_id(customer_lookup):
    service, _, _, _ = _service()

    outcome = await service.handle(AsyncMock(spec=AsyncSession), _payload('user.expired', telegram_id=None))

    assert outcome is WebhookOutcome.CUSTOMER_NOT_FOUND
    customer_lookup.assert_not_awaited()


async def test_expiring_sends_reminder_with_renew_button(customer_lookup):
    service, notification_service, recurring, _ = _service()

    outcome = await service.handle(AsyncMock(spec=AsyncSession), _payload('user.expires_in_24_hours'))

    assert outcome is WebhookOutcome.PROCESSED
    assert notification_service.send.await_args.args == (100, 'subscription_expiring_1day')
    notification_service.button.assert_called_once_with('ru', 'renew_button', CALLBACK_BUY)
    recurring.notify_upcoming_charge.assert_not_awaited()


async def test_expiring_with_autopay_warns_about_charge(customer_lookup):
    customer_lookup.return_value = _customer(recurring=True)
    service, notification_service, recurring, _ = _service()
    db = AsyncMock(spec=AsyncSession)

    await service.handle(db, _payload('user.expires_in_24_hours'))

    recurring.notify_upcoming_charge.assert_awaited_once()
    notified_at = recurring.notify_upcoming_charge.await_args.args[2]
    assert notified_at.tzinfo is UTC
    assert notified_at <= datetime.now(UTC)
    notification_service.send.assert_not_awaited()


async def test_expired_with_autopay_charges(customer_lookup):
    customer = _customer(recurring=True)
    customer_lookup.return_value = customer
    service, notification_service, recurring, _ = _service()
    db = AsyncMock(spec=AsyncSession)

    await service.handle(db, _payload('user.expired'))

    recurring.charge.assert_awaited_once_with(db, customer)
    notification_service.send.assert_not_awaited()


async def test_expired_with_autopay_switched_off_globally(customer_lookup):
    customer_lookup.return_value = _customer(recurring=True)
    service, notification_service, recurring, _ = _service(recurring_enabled=False)

    await service.handle(AsyncMock(spec=AsyncSession), _payload('user.expired'))

    recurring.charge.assert_not_awaited()
    assert notification_service.send.await_args.args == (100, 'subscription_expired')


async def test_expired_day_ago_issues_winback(customer_lookup):
    service, _, _, winback = _service()
    db = AsyncMock(spec=AsyncSession)

    outcome = await service.handle(db, _payload('user.expired_24_hours_ago'))

    assert outcome is WebhookOutcome.PROCESSED
    winback.issue_offer.assert_awaited_once()
    assert winback.issue_offer.await_args.args[0] is db
