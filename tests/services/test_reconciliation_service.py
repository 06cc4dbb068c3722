import json
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings
from app.external.cryptopay import CryptoInvoice, CryptoPayAPIError
from app.external.yookassa import YooKassaAPIError, YooKassaPayment
from app.services import reconciliation_service
from app.services.reconciliation_service import ReconciliationService


class FakeSessionFactory:
    def __init__(self):
        self.db = AsyncMock(spec=AsyncSession)

    def __call__(self):
        return self

    async def __aenter__(self):
        return self.db

    async def __aexit__(self, exc_type, exc, tb):
        return None


def _pending(purchase_id, **fields):
    return SimpleNamespace(id=purchase_id, customer_id=1, tariff_name='PRO', **fields)


def _payment_service():
    return SimpleNamespace(
        process_purchase_by_id=AsyncMock(return_value=True),
        cancel_purchase=AsyncMock(return_value=True),
    )


def _yookassa_payment(payment_id, status, *, paid=False, **fields):
    return YooKassaPayment(id=payment_id, status=status, paid=paid, **fields)


@pytest.fixture
def pending(monkeypatch):
    mock = AsyncMock(return_value=[])
    monkeypatch.setattr(reconciliation_service, 'get_purchases_by_invoice_type_and_status', mock)
    return mock


async def test_crypto_tick_settles_paid_and_cancels_expired(pending):
    pending.return_value = [
        _pending(1, crypto_invoice_id=101),
        _pending(2, crypto_invoice_id=102),
        _pending(3, crypto_invoice_id=None),
    ]
    cryptopay_client = SimpleNamespace(
        get_invoices=AsyncMock(
            return_value=[
                CryptoInvoice(invoice_id=101, status='paid', payload='purchaseId=1&username=bob'),
                CryptoInvoice(invoice_id=102, status='expired', payload=None),
            ]
        )
    )
    payment_service = _payment_service()
    factory = FakeSessionFactory()
    service = ReconciliationService(factory, payment_service, cryptopay_client=cryptopay_client, config=Settings())

    await service.check_crypto_invoices()

    cryptopay_client.get_invoices.assert_awaited_once_with([101, 102])
    payment_service.process_purchase_by_id.assert_awaited_once_with(factory.db, 1, username='bob')
    payment_service.cancel_purchase.assert_awaited_once_with(factory.db, 2)


async def test_crypto_tick_continues_after_failure(pending):
    pending.return_value = [_pending(1, crypto_invoice_id=101), _pending(2, crypto_invoice_id=102)]
    cryptopay_client = SimpleNamespace(
        get_invoices=AsyncMock(
            return_value=[
                CryptoInvoice(invoice_id=101, status='paid', payload='purchaseId=1&username='),
                CryptoInvoice(invoice_id=102, status='paid', payload='purchaseId=2&username='),
            ]
        )
    )
    payment_service = _payment_service()
    payment_service.process_purchase_by_id.side_effect = [RuntimeError('panel down'), True]
    factory = FakeSessionFactory()
    service = ReconciliationService(factory, payment_service, cryptopay_client=cryptopay_client, config=Settings())

    await service.check_crypto_invoices()

    assert payment_service.process_purchase_by_id.await_count == 2
    factory.db.rollback.assert_awaited_once()


async def test_crypto_tick_survives_provider_error(pending):
    pending.return_value = [_pending(1, crypto_invoice_id=101)]
    cryptopay_client = SimpleNamespace(get_invoices=AsyncMock(side_effect=CryptoPayAPIError('timeout')))
    payment_service = _payment_service()
    service = ReconciliationService(
        FakeSessionFactory(), payment_service, cryptopay_client=cryptopay_client, config=Settings()
    )

    await service.check_crypto_invoices()

    payment_service.process_purchase_by_id.assert_not_awaited()


async def test_crypto_tick_skips_provider_call_without_pending(pending):
    cryptopay_client = SimpleNamespace(get_invoices=AsyncMock())
    service = ReconciliationService(
        FakeSessionFactory(), _payment_service(), cryptopay_client=cryptopay_client, config=Settings()
    )

    await service.check_crypto_invoices()

    cryptopay_client.get_invoices.assert_not_awaited()


async def test_yookassa_tick_applies_each_status(pending, monkeypatch):
    pending.return_value = [
        _pending(1, yookasa_id='p-1'),
        _pending(2, yookasa_id='p-2'),
        _pending(3, yookasa_id='p-3'),
        _pending(4, yookasa_id='p-4'),
    ]
    payments = {
        'p-1': _yookassa_payment('p-1', 'succeeded', paid=True, metadata={'username': 'ann'}),
        'p-2': _yookassa_payment('p-2', 'canceled'),
        'p-3': _yookassa_payment('p-3', 'pending'),
    }

    async def get_payment(payment_id):
        if payment_id == 'p-4':
            raise YooKassaAPIError('not found', status_code=404)
        return payments[payment_id]

    sleep = AsyncMock()
    monkeypatch.setattr(reconciliation_service.asyncio, 'sleep', sleep)
    payment_service = _payment_service()
    factory = FakeSessionFactory()
    service = ReconciliationService(
        factory,
        payment_service,
        yookassa_client=SimpleNamespace(get_payment=get_payment),
        config=Settings(YOOKASSA_REQUEST_DELAY_MS=200),
    )

    await service.check_yookassa_invoices()

    payment_service.process_purchase_by_id.assert_awaited_once_with(factory.db, 1, username='ann')
    payment_service.cancel_purchase.assert_awaited_once_with(factory.db, 2)
    assert sleep.await_count == 3
    sleep.assert_awaited_with(0.2)


async def test_yookassa_tick_continues_after_unexpected_fetch_error(pending):
    pending.return_value = [_pending(1, yookasa_id='p-1'), _pending(2, yookasa_id='p-2')]

    async def get_payment(payment_id):
        if payment_id == 'p-1':
            raise json.JSONDecodeError('Expecting value', '<html>', 0)
        return _yookassa_payment('p-2', 'succeeded', paid=True)

    payment_service = _payment_service()
    factory = FakeSessionFactory()
    service = ReconciliationService(
        factory,
        payment_service,
        yookassa_client=SimpleNamespace(get_payment=get_payment),
        config=Settings(YOOKASSA_REQUEST_DELAY_MS=0),
    )

    await service.check_yookassa_invoices()

    payment_service.process_purchase_by_id.assert_awaited_once_with(factory.db, 2, username=None)


async def test_yookassa_tick_stores_recurring_settings(pending, monkeypatch):
    pending.return_value = [_pending(1, yookasa_id='p-1')]
    customer = SimpleNamespace(id=1, recurring_enabled=False, payment_method_id=None)
    monkeypatch.setattr(reconciliation_service, 'get_purchase_by_id', AsyncMock(return_value=_pending(1)))
    monkeypatch.setattr(reconciliation_service, 'get_customer_by_id', AsyncMock(return_value=customer))
    payment = _yookassa_payment(
        'p-1',
        'succeeded',
        paid=True,
        payment_method_id='pm-1',
        payment_method_saved=True,
        metadata={'recurring_months': '3', 'recurring_amount': '799'},
    )
    service = ReconciliationService(
        FakeSessionFactory(),
        _payment_service(),
        yookassa_client=SimpleNamespace(get_payment=AsyncMock(return_value=payment)),
        config=Settings(RECURRING_PAYMENTS_ENABLED=True, YOOKASSA_REQUEST_DELAY_MS=0),
    )

    await service.check_yookassa_invoices()

    assert customer.recurring_enabled is True
    assert customer.payment_method_id == 'pm-1'
    assert customer.recurring_months == 3
    assert customer.recurring_amount == 799
    assert customer.recurring_tariff_name == 'PRO'


async def test_yookassa_tick_ignores_saved_method_when_recurring_disabled(pending, monkeypatch):
    pending.return_value = [_pending(1, yookasa_id='p-1')]
    lookup = AsyncMock()
    monkeypatch.setattr(reconciliation_service, 'get_purchase_by_id', lookup)
    payment = _yookassa_payment(
        'p-1',
        'succeeded',
        paid=True,
        payment_method_id='pm-1',
        payment_method_saved=True,
        metadata={'recurring_months': '1', 'recurring_amount': '199'},
    )
    service = ReconciliationService(
        FakeSessionFactory(),
        _payment_service(),
        yookassa_client=SimpleNamespace(get_payment=AsyncMock(return_value=payment)),
        config=Settings(RECURRING_PAYMENTS_ENABLED=False),
    )

    await service.check_yookassa_invoices()

    lookup.assert_not_awaited()
