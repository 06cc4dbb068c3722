from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings, Tariff
from app.database.models import InvoiceType
from app.services import tribute_service
from app.services.tribute_service import TributeOutcome, TributeService, period_to_months
from app.webapi.schemas.webhooks import TributeWebhookPayload


TARIFF = Tariff(
    name='PRO',
    devices=5,
    price_1=300,
    price_3=800,
    price_6=1500,
    price_12=2800,
    stars_price_1=300,
    stars_price_3=800,
    stars_price_6=1500,
    stars_price_12=2800,
    tribute_name='VPN Pro',
)


def _webhook(name='new_subscription', **payload):
    data = {
        'subscription_id': 11,
        'subscription_name': 'VPN Pro',
        'period': 'quarterly',
        'amount': 800,
        'currency': 'rub',
        'telegram_user_id': 100,
    }
    data.update(payload)
    return TributeWebhookPayload.model_validate({'name': name, 'payload': data})


@pytest.fixture
def crud(monkeypatch):
    mocks = SimpleNamespace(
        get_customer=AsyncMock(return_value=SimpleNamespace(id=1, telegram_id=100)),
        create_purchase=AsyncMock(return_value=SimpleNamespace(id=42)),
    )
    monkeypatch.setattr(tribute_service, 'get_customer_by_telegram_id', mocks.get_customer)
    monkeypatch.setattr(tribute_service, 'create_purchase', mocks.create_purchase)
    return mocks


def _service():
    payment_service = SimpleNamespace(process_purchase_by_id=AsyncMock(return_value=True))
    return TributeService(payment_service, Settings(TARIFFS=(TARIFF,))), payment_service


@pytest.mark.parametrize(
    ('period', 'months'),
    [('monthly', 1), ('Quarterly', 3), ('3-month', 3), ('halfyearly', 6), ('yearly', 12), ('weird', 1), (None, 1)],
)
def test_period_to_months(period, months):
    assert period_to_months(period) == months


async def test_new_subscription_records_and_grants(crud):
    service, payment_service = _service()
    db = AsyncMock(spec=AsyncSession)

    outcome = await service.handle(db, _webhook())

    assert outcome is TributeOutcome.PROCESSED
    kwargs = crud.create_purchase.await_args.kwargs
    assert kwargs['invoice_type'] is InvoiceType.TRIBUTE
    assert kwargs['month'] == 3
    assert kwargs['amount'] == 800
    assert kwargs['currency'] == 'RUB'
    assert kwargs['tariff_name'] == 'PRO'
    assert kwargs['device_limit'] == 5
    payment_service.process_purchase_by_id.assert_awaited_once_with(db, 42)


async def test_unknown_tariff_still_grants(crud):
    service, payment_service = _service()

    await service.handle(AsyncMock(spec=AsyncSession), _webhook(subscription_name='Other'))

    assert crud.create_purchase.await_args.kwargs['tariff_name'] is None
    payment_service.process_purchase_by_id.assert_awaited_once()


async def test_cancelled_subscription_is_acknowledged_only(crud):
    service, payment_service = _service()

    outcome = await service.handle(AsyncMock(spec=AsyncSession), _webhook('cancelled_subscription'))

    assert outcome is TributeOutcome.PROCESSED
    crud.create_purchase.assert_not_awaited()
    payment_service.process_purchase_by_id.assert_not_awaited()


async def test_test_and_unknown_events_are_ignored(crud):
    service, _ = _service()
    db = AsyncMock(spec=AsyncSession)

    assert await service.handle(db, TributeWebhookPayload()) is TributeOutcome.IGNORED
    assert await service.handle(db, _webhook('new_donation')) is TributeOutcome.IGNORED
    crud.get_customer.assert_not_awaited()


async def test_unknown_customer(crud):
    crud.get_customer.return_value = None
    service, _ = _service()

    outcome = await service.handle(AsyncMock(spec=AsyncSession), _webhook())

    assert outcome is TributeOutcome.CUSTOMER_NOT_FOUND
    crud.create_purchase.assert_not_awaited()
