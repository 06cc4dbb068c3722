import structlog
from aiogram import Dispatcher, F, types
from aiogram.filters import Command, CommandObject
from aiogram.types import InlineKeyboardButton, InlineKeyboardMarkup, LabeledPrice
from sqlalchemy.ext.asyncio import AsyncSession

from app.database.crud.purchase import get_purchase_by_id
from app.database.models import Customer, InvoiceType, OfferKind, PurchaseStatus
from app.services.notification_service import CALLBACK_PROMO_TARIFF, CALLBACK_WINBACK, NotificationService
from app.services.offer_service import OfferPurchaseResult, OfferService
from app.services.payment_service import (
    PaymentProviderUnavailableError,
    PaymentService,
    PurchaseNotFoundError,
    parse_stars_payload,
)
from app.services.promo_code_service import PromoCodeService
from app.services.promo_tariff_service import PromoTariffService
from app.services.winback_service import WinbackService


logger = structlog.get_logger(__name__)

PAY_METHODS = (
    (InvoiceType.YOOKASA, 'pay_card_button'),
    (InvoiceType.CRYPTO, 'pay_crypto_button'),
    (InvoiceType.TELEGRAM, 'pay_stars_button'),
)


def _parse_invoice_type(callback_data: str) -> InvoiceType | None:
    # "<offer>:<invoice_type>"
    _, _, raw = callback_data.partition(':')
    if not raw:
        return None
    try:
        return InvoiceType(raw)
    except ValueError:
        return None


def _payment_methods_keyboard(
    notification_service: NotificationService, language: str | None, prefix: str
) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(
        inline_keyboard=[
            [
                InlineKeyboardButton(
                    text=notification_service.text(language, key),
                    callback_data=f'{prefix}:{invoice_type.value}',
                )
            ]
            for invoice_type, key in PAY_METHODS
        ]
    )


async def handle_promo_command(
    message: types.Message,
    command: CommandObject,
    db_user: Customer,
    db: AsyncSession,
    promo_code_service: PromoCodeService,
    promo_tariff_service: PromoTariffService,
    notification_service: NotificationService,
):
    language = db_user.language
    raw_code = command.args or ''

    # a code may be either kind, bonus-day codes are tried first
    result = await promo_code_service.apply_promo_code(db, db_user, raw_code)
    if result.success:
        await message.answer(
            notification_service.text(
                language,
                'promo_activated',
                days=result.bonus_days,
                expire_at=result.new_expire_at.strftime('%d.%m.%Y') if result.new_expire_at else '',
            )
        )
        return

    if result.error_key == 'promo_not_found' and promo_tariff_service.config.PROMO_TARIFF_CODES_ENABLED:
        tariff_result = await promo_tariff_service.apply_promo_tariff_code(db, db_user, raw_code)
        if tariff_result.success:
            offer = tariff_result.offer
            await message.answer(
                notification_service.text(
                    language,
                    'promo_tariff_activated',
                    price=offer.price,
                    devices=offer.devices,
                    months=offer.months,
                    expires_at=offer.expires_at.strftime('%d.%m.%Y %H:%M'),
                ),
                reply_markup=notification_service.button(language, 'promo_tariff_button', CALLBACK_PROMO_TARIFF),
            )
            return
        if tariff_result.error_key != 'promo_tariff_not_found':
            await message.answer(notification_service.text(language, tariff_result.error_key))
            return

    await message.answer(notification_service.text(language, result.error_key))


async def handle_offer_menu(
    callback: types.CallbackQuery,
    db_user: Customer,
    notification_service: NotificationService,
):
    prefix = callback.data
    if callback.message:
        await callback.message.edit_reply_markup(
            reply_markup=_payment_methods_keyboard(notification_service, db_user.language, prefix)
        )
    await callback.answer()


async def _start_offer_checkout(
    callback: types.CallbackQuery,
    db_user: Customer,
    db: AsyncSession,
    kind: OfferKind,
    offer_service: OfferService,
    winback_service: WinbackService,
    notification_service: NotificationService,
):
    invoice_type = _parse_invoice_type(callback.data or '')
    if invoice_type is None:
        await callback.answer('Invalid payment method', show_alert=True)
        return

    username = callback.from_user.username if callback.from_user else None
    try:
        if kind == OfferKind.WINBACK:
            result = await winback_service.activate_offer(db, db_user, invoice_type, username=username)
        else:
            result = await offer_service.start_offer_purchase(db, db_user, kind, invoice_type, username=username)
    except PaymentProviderUnavailableError as exc:
        await db.rollback()
        logger.warning('Payment provider unavailable', customer_id=db_user.id, kind=kind.value, exc=exc)
        await callback.answer(notification_service.text(db_user.language, 'payment_unavailable'), show_alert=True)
        return
    except Exception as exc:
        await db.rollback()
        logger.error('Failed to start offer checkout', customer_id=db_user.id, kind=kind.value, exc=exc)
        await callback.answer(notification_service.text(db_user.language, 'payment_error'), show_alert=True)
        return

    await _send_checkout(callback, db_user, result, notification_service)


async def _send_checkout(
    callback: types.CallbackQuery,
    db_user: Customer,
    result: OfferPurchaseResult,
    notification_service: NotificationService,
):
    language = db_user.language
    if not result.success:
        await callback.answer(notification_service.text(language, result.error_key), show_alert=True)
        return

    checkout = result.checkout
    purchase = checkout.purchase
    if checkout.stars_payload is not None:
        await callback.message.answer_invoice(
            title=notification_service.text(language, 'invoice_title'),
            description=notification_service.text(language, 'invoice_description', months=purchase.month),
            payload=checkout.stars_payload,
            currency='XTR',
            prices=[LabeledPrice(label='XTR', amount=int(purchase.amount))],
        )
    elif checkout.payment_url:
        await callback.message.answer(
            notification_service.text(language, 'pay_link', amount=purchase.amount, months=purchase.month),
            reply_markup=InlineKeyboardMarkup(
                inline_keyboard=[
                    [
                        InlineKeyboardButton(
                            text=notification_service.text(language, 'pay_button'),
                            url=checkout.payment_url,
                        )
                    ]
                ]
            ),
        )
    await callback.answer()


async def handle_winback_checkout(
    callback: types.CallbackQuery,
    db_user: Customer,
    db: AsyncSession,
    offer_service: OfferService,
    winback_service: WinbackService,
    notification_service: NotificationService,
):
    await _start_offer_checkout(
        callback, db_user, db, OfferKind.WINBACK, offer_service, winback_service, notification_service
    )


async def handle_promo_tariff_checkout(
    callback: types.CallbackQuery,
    db_user: Customer,
    db: AsyncSession,
    offer_service: OfferService,
    winback_service: WinbackService,
    notification_service: NotificationService,
):
    await _start_offer_checkout(
        callback, db_user, db, OfferKind.PROMO_TARIFF, offer_service, winback_service, notification_service
    )


async def handle_pre_checkout(pre_checkout_query: types.PreCheckoutQuery, db: AsyncSession):
    purchase_id, _ = parse_stars_payload(pre_checkout_query.invoice_payload)
    purchase = await get_purchase_by_id(db, purchase_id) if purchase_id is not None else None
    if purchase is None:
        await pre_checkout_query.answer(ok=False, error_message='Invalid invoice')
        return

    # approving the query takes the Stars
    if (
        purchase.invoice_type != InvoiceType.TELEGRAM.value
        or not purchase.can_transition_to(PurchaseStatus.PAID)
        or pre_checkout_query.total_amount != int(purchase.amount)
    ):
        logger.warning(
            'Rejected Stars pre-checkout',
            purchase_id=purchase.id,
            status=purchase.status,
            invoice_type=purchase.invoice_type,
            total_amount=pre_checkout_query.total_amount,
        )
        await pre_checkout_query.answer(ok=False, error_message='Invoice is no longer payable')
        return
    await pre_checkout_query.answer(ok=True)


async def handle_successful_payment(
    message: types.Message,
    db: AsyncSession,
    payment_service: PaymentService,
):
    purchase_id, username = parse_stars_payload(message.successful_payment.invoice_payload)
    if purchase_id is None:
        logger.error('Stars payment without purchase id', payload=message.successful_payment.invoice_payload)
        return

    try:
        await payment_service.process_purchase_by_id(db, purchase_id, username=username)
    except PurchaseNotFoundError:
        logger.error('Stars payment for unknown purchase', purchase_id=purchase_id)
    except Exception as exc:
        await db.rollback()
        logger.error('Failed to process stars payment', purchase_id=purchase_id, exc=exc)


def register_handlers(dp: Dispatcher):
    dp.message.register(handle_promo_command, Command('promo'))
    dp.callback_query.register(handle_offer_menu, F.data.in_({CALLBACK_WINBACK, CALLBACK_PROMO_TARIFF}))
    dp.callback_query.register(handle_winback_checkout, F.data.startswith(f'{CALLBACK_WINBACK}:'))
    dp.callback_query.register(handle_promo_tariff_checkout, F.data.startswith(f'{CALLBACK_PROMO_TARIFF}:'))
    dp.pre_checkout_query.register(handle_pre_checkout)
    dp.message.register(handle_successful_payment, F.successful_payment)
