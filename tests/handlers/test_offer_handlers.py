from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from app.database.models import InvoiceType, OfferKind, Purchase, PurchaseStatus
from app.handlers import offers
from app.services.offer_service import OfferPurchaseResult
from app.services.payment_service import PaymentProviderUnavailableError, PurchaseNotFoundError


def _notification_service():
    return SimpleNamespace(
        text=lambda language, key, **kwargs: key,
        button=MagicMock(return_value='markup'),
    )


def _customer():
    return SimpleNamespace(id=7, telegram_id=700, language='ru')


def _callback(data):
    return SimpleNamespace(
        data=data,
        from_user=SimpleNamespace(username='alice'),
        message=SimpleNamespace(answer=AsyncMock(), answer_invoice=AsyncMock(), edit_reply_markup=AsyncMock()),
        answer=AsyncMock(),
    )


def _services():
    return SimpleNamespace(
        offer_service=SimpleNamespace(start_offer_purchase=AsyncMock()),
        winback_service=SimpleNamespace(activate_offer=AsyncMock()),
    )


@pytest.mark.parametrize(
    ('data', 'expected'),
    [
        ('winback:yookasa', InvoiceType.YOOKASA),
        ('promo_tariff:telegram', InvoiceType.TELEGRAM),
        ('winback:paypal', None),
        ('winback', None),
    ],
)
def test_parse_invoice_type(data, expected):
    assert offers._parse_invoice_type(data) == expected


async def test_promo_command_applies_bonus_code():
    message = SimpleNamespace(answer=AsyncMock())
    promo_code_service = SimpleNamespace(
        apply_promo_code=AsyncMock(return_value=SimpleNamespace(success=True, bonus_days=7, new_expire_at=None))
    )
    promo_tariff_service = SimpleNamespace(config=SimpleNamespace(PROMO_TARIFF_CODES_ENABLED=True))

    await offers.handle_promo_command(
        message,
        SimpleNamespace(args='SPRING'),
        _customer(),
        AsyncMock(spec=AsyncSession),
        promo_code_service,
        promo_tariff_service,
        _notification_service(),
    )

    message.answer.assert_awaited_once_with('promo_activated')


async def test_promo_command_falls_back_to_tariff_code():
    message = SimpleNamespace(answer=AsyncMock())
    promo_code_service = SimpleNamespace(
        apply_promo_code=AsyncMock(return_value=SimpleNamespace(success=False, error_key='promo_not_found'))
    )
    promo_tariff_service = SimpleNamespace(
        config=SimpleNamespace(PROMO_TARIFF_CODES_ENABLED=True),
        apply_promo_tariff_code=AsyncMock(
            return_value=SimpleNamespace(success=False, error_key='promo_tariff_already_used', offer=None)
        ),
    )

    await offers.handle_promo_command(
        message,
        SimpleNamespace(args='SUMMER'),
        _customer(),
        AsyncMock(spec=AsyncSession),
        promo_code_service,
        promo_tariff_service,
        _notification_service(),
    )

    promo_tariff_service.apply_promo_tariff_code.assert_awaited_once()
    message.answer.assert_awaited_once_with('promo_tariff_already_used')


async def test_promo_command_reports_unknown_code_when_tariff_codes_disabled():
    message = SimpleNamespace(answer=AsyncMock())
    promo_code_service = SimpleNamespace(
        apply_promo_code=AsyncMock(return_value=SimpleNamespace(success=False, error_key='promo_not_found'))
    )
    promo_tariff_service = SimpleNamespace(
        config=SimpleNamespace(PROMO_TARIFF_CODES_ENABLED=False),
        apply_promo_tariff_code=AsyncMock(),
    )

    await offers.handle_promo_command(
        message,
        SimpleNamespace(args='NOPE'),
        _customer(),
        AsyncMock(spec=AsyncSession),
        promo_code_service,
        promo_tariff_service,
        _notification_service(),
    )

    promo_tariff_service.apply_promo_tariff_code.assert_not_awaited()
    message.answer.assert_awaited_once_with('promo_not_found')


async def test_winback_checkout_sends_stars_invoice():
    services = _services()
    purchase = SimpleNamespace(id=11, amount=150, month=1)
    services.winback_service.activate_offer.return_value = OfferPurchaseResult(
        success=True,
        checkout=SimpleNamespace(purchase=purchase, stars_payload='11&alice', payment_url=None),
    )
    callback = _callback('winback:telegram')

    await offers.handle_winback_checkout(
        callback,
        _customer(),
        AsyncMock(spec=AsyncSession),
        services.offer_service,
        services.winback_service,
        _notification_service(),
    )

    services.winback_service.activate_offer.assert_awaited_once()
    assert services.winback_service.activate_offer.await_args.kwargs['username'] == 'alice'
    invoice = callback.message.answer_invoice.await_args.kwargs
    assert invoice['payload'] == '11&alice'
    assert invoice['currency'] == 'XTR'
    callback.answer.assert_awaited_once_with()


async def test_promo_tariff_checkout_sends_pay_link():
    services = _services()
    purchase = SimpleNamespace(id=12, amount=299, month=3)
    services.offer_service.start_offer_purchase.return_value = OfferPurchaseResult(
        success=True,
        checkout=SimpleNamespace(purchase=purchase, stars_payload=None, payment_url='https://pay.example/12'),
    )
    callback = _callback('promo_tariff:yookasa')

    await offers.handle_promo_tariff_checkout(
        callback,
        _customer(),
        AsyncMock(spec=AsyncSession),
        services.offer_service,
        services.winback_service,
        _notification_service(),
    )

    args = services.offer_service.start_offer_purchase.await_args.args
    assert args[2] == OfferKind.PROMO_TARIFF
    assert args[3] == InvoiceType.YOOKASA
    assert callback.message.answer.await_args.args[0] == 'pay_link'


async def test_offer_checkout_rejected_offer_alerts_user():
    services = _services()
    services.winback_service.activate_offer.return_value = OfferPurchaseResult(
        success=False, error_key='winback_expired'
    )
    callback = _callback('winback:crypto')

    await offers.handle_winback_checkout(
        callback,
        _customer(),
        AsyncMock(spec=AsyncSession),
        services.offer_service,
        services.winback_service,
        _notification_service(),
    )

    callback.answer.assert_awaited_once_with('winback_expired', show_alert=True)
    callback.message.answer.assert_not_awaited()


@pytest.mark.parametrize(
    ('error', 'key'),
    [
        (PaymentProviderUnavailableError('crypto'), 'payment_unavailable'),
        (RuntimeError('boom'), 'payment_error'),
    ],
)
async def test_offer_checkout_failure_rolls_back(error, key):
    services = _services()
    services.winback_service.activate_offer.side_effect = error
    db = AsyncMock(spec=AsyncSession)
    callback = _callback('winback:crypto')

    await offers.handle_winback_checkout(
        callback,
        _customer(),
        db,
        services.offer_service,
        services.winback_service,
        _notification_service(),
    )

    db.rollback.assert_awaited_once()
    callback.answer.assert_awaited_once_with(key, show_alert=True)


async def test_offer_checkout_unknown_method():
    services = _services()
    callback = _callback('winback:paypal')

    await offers.handle_winback_checkout(
        callback,
        _customer(),
        AsyncMock(spec=AsyncSession),
        services.offer_service,
        services.winback_service,
        _notification_service(),
    )

    services.winback_service.activate_offer.assert_not_awaited()
    assert callback.answer.await_args.kwargs['show_alert'] is True


def _stars_purchase(status=PurchaseStatus.PENDING, invoice_type=InvoiceType.TELEGRAM):
    return Purchase(id=15, customer_id=7, amount=300, month=1, status=status.value, invoice_type=invoice_type.value)


@pytest.mark.parametrize(
    ('purchase', 'total_amount', 'ok'),
    [
        (_stars_purchase(), 300, True),
        (_stars_purchase(PurchaseStatus.NEW), 300, True),
        (_stars_purchase(PurchaseStatus.PAID), 300, False),
        (_stars_purchase(PurchaseStatus.CANCEL), 300, False),
        (_stars_purchase(invoice_type=InvoiceType.YOOKASA), 300, False),
        (_stars_purchase(), 1, False),
        (None, 300, False),
    ],
)
async def test_pre_checkout_only_approves_payable_purchase(monkeypatch, purchase, total_amount, ok):
    get_purchase = AsyncMock(return_value=purchase)
    monkeypatch.setattr(offers, 'get_purchase_by_id', get_purchase)
    query = SimpleNamespace(invoice_payload='15&bob', total_amount=total_amount, answer=AsyncMock())
    db = AsyncMock(spec=AsyncSession)

    await offers.handle_pre_checkout(query, db)

    get_purchase.assert_awaited_once_with(db, 15)
    assert query.answer.await_args.kwargs['ok'] is ok


async def test_pre_checkout_rejects_unparseable_payload(monkeypatch):
    get_purchase = AsyncMock()
    monkeypatch.setattr(offers, 'get_purchase_by_id', get_purchase)
    query = SimpleNamespace(invoice_payload='garbage', total_amount=300, answer=AsyncMock())

    await offers.handle_pre_checkout(query, AsyncMock(spec=AsyncSession))

    get_purchase.assert_not_awaited()
    assert query.answer.await_args.kwargs['ok'] is False


async def test_successful_payment_processes_purchase():
    payment_service = SimpleNamespace(process_purchase_by_id=AsyncMock())
    message = SimpleNamespace(successful_payment=SimpleNamespace(invoice_payload='15&bob'))
    db = AsyncMock(spec=AsyncSession)

    await offers.handle_successful_payment(message, db, payment_service)

    payment_service.process_purchase_by_id.assert_awaited_once_with(db, 15, username='bob')


async def test_successful_payment_for_unknown_purchase_is_logged():
    payment_service = SimpleNamespace(process_purchase_by_id=AsyncMock(side_effect=PurchaseNotFoundError(15)))
    message = SimpleNamespace(successful_payment=SimpleNamespace(invoice_payload='15&'))
    db = AsyncMock(spec=AsyncSession)

    await offers.handle_successful_payment(message, db, payment_service)

    payment_service.process_purchase_by_id.assert_awaited_once_with(db, 15, username=None)
    db.rollback.assert_not_awaited()
