from __future__ import annotations

from datetime import datetime
from enum import Enum

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings, settings as default_settings
from app.database.crud.customer import delete_payment_method, disable_recurring, update_recurring_notified_at
from app.database.crud.purchase import create_purchase, has_recent_paid_purchase, mark_purchase_as_pending
from app.database.models import Customer, InvoiceType
from app.external.yookassa import YooKassaAPIError, YooKassaClient
from app.services.notification_service import CALLBACK_BUY, CALLBACK_SAVED_PAYMENT_METHODS, NotificationService
from app.services.payment_service import PaymentService


logger = structlog.get_logger(__name__)


class RecurringChargeResult(Enum):
    SKIPPED_RECENT_PAYMENT = 'skipped_recent_payment'
    FAILED = 'failed'
    PERMISSION_REVOKED = 'permission_revoked'
    # charged, entitlement left to the reconciliation loop
    PENDING = 'pending'
    SUCCEEDED = 'succeeded'


def months_word(months: int) -> str:
    if months == 1:
        return 'месяц'
    if months in (3, 4):
        return 'месяца'
    return 'месяцев'


def recurring_description(months: int) -> str:
    return f'Автопродление подписки на {months} {months_word(months)}'


class RecurringBillingService:
    """Charges the saved card of an opted-in customer when the subscription expires."""

    def __init__(
        self,
        yookassa_client: YooKassaClient,
        payment_service: PaymentService,
        notification_service: NotificationService | None = None,
        config: Settings | None = None,
    ):
        self.config = config or default_settings
        self.yookassa_client = yookassa_client
        self.payment_service = payment_service
        self.notification_service = notification_service

    async def _notify(self, customer: Customer, key: str, *, callback_data: str | None = None, **params) -> None:
        if self.notification_service is None:
            return
        reply_markup = None
        if callback_data:
            reply_markup = self.notification_service.button(customer.language, f'{key}_button', callback_data)
        await self.notification_service.send(
            customer.telegram_id,
            key,
            language=customer.language,
            reply_markup=reply_markup,
            **params,
        )

    async def charge(self, db: AsyncSession, customer: Customer) -> RecurringChargeResult:
        if await has_recent_paid_purchase(db, customer.id, self.config.RECURRING_DUPLICATE_WINDOW_MINUTES):
            logger.info('Recent payment found, skipping recurring charge', customer_id=customer.id)
            return RecurringChargeResult.SKIPPED_RECENT_PAYMENT

        amount = customer.recurring_amount
        months = customer.recurring_months or 1
        if not customer.payment_method_id or not amount:
            logger.error(
                'Recurring settings are incomplete',
                customer_id=customer.id,
                has_payment_method=bool(customer.payment_method_id),
                amount=amount,
            )
            await self._notify(customer, 'recurring_failed', callback_data=CALLBACK_BUY)
            return RecurringChargeResult.FAILED

        try:
            payment = await self.yookassa_client.create_recurring_payment(
                payment_method_id=customer.payment_method_id,
                amount=amount,
                months=months,
                customer_id=customer.id,
                description=recurring_description(months),
            )
        except YooKassaAPIError as exc:
            logger.error('Recurring charge request failed', customer_id=customer.id, exc=exc)
            await self._notify(customer, 'recurring_failed', callback_data=CALLBACK_BUY)
            return RecurringChargeResult.FAILED

        if payment.is_permission_revoked:
            await disable_recurring(db, customer)
            await db.commit()
            logger.warning(
                'Recurring permission revoked, autopay disabled', customer_id=customer.id, payment_id=payment.id
            )
            await self._notify(customer, 'recurring_permission_revoked', callback_data=CALLBACK_BUY)
            return RecurringChargeResult.PERMISSION_REVOKED

        if payment.is_cancelled:
            logger.warning(
                'Recurring charge cancelled',
                customer_id=customer.id,
                payment_id=payment.id,
                reason=payment.cancellation_reason,
            )
            await self._notify(customer, 'recurring_failed', callback_data=CALLBACK_BUY)
            return RecurringChargeResult.FAILED

        # device limit follows the tariff as configured now, not at signup
        tariff = self.config.get_tariff_by_name(customer.recurring_tariff_name)
        purchase = await create_purchase(
            db,
            customer_id=customer.id,
            amount=amount,
            month=months,
            invoice_type=InvoiceType.YOOKASA,
            tariff_name=tariff.name if tariff else None,
            device_limit=tariff.devices if tariff else None,
        )
        await mark_purchase_as_pending(db, purchase, yookasa_id=payment.id)
        await db.commit()

        if not payment.is_succeeded:
            logger.info('Recurring charge is still pending', customer_id=customer.id, payment_id=payment.id)
            return RecurringChargeResult.PENDING

        try:
            await self.payment_service.process_purchase_by_id(db, purchase.id, notify=False)
        except Exception as exc:
            # card already charged, the pending purchase is settled by reconciliation
            await db.rollback()
            logger.error(
                'Failed to extend subscription after recurring charge',
                customer_id=customer.id,
                purchase_id=purchase.id,
                exc=exc,
            )
            return RecurringChargeResult.PENDING

        logger.info(
            'Recurring charge succeeded',
            customer_id=customer.id,
            purchase_id=purchase.id,
            amount=amount,
            months=months,
        )
        await self._notify(customer, 'recurring_success_simple', amount=amount, months=months)
        return RecurringChargeResult.SUCCEEDED

    async def disable(self, db: AsyncSession, customer: Customer) -> None:
        await disable_recurring(db, customer)
        await db.commit()
        logger.info('Recurring payments disabled by customer', customer_id=customer.id)

    async def remove_payment_method(self, db: AsyncSession, customer: Customer) -> None:
        await delete_payment_method(db, customer)
        await db.commit()
        logger.info('Saved payment method removed', customer_id=customer.id)

    async def notify_upcoming_charge(self, db: AsyncSession, customer: Customer, notified_at: datetime) -> None:
        await self._notify(
            customer,
            'recurring_charge_notification',
            callback_data=CALLBACK_SAVED_PAYMENT_METHODS,
            amount=customer.recurring_amount,
            months=customer.recurring_months or 1,
        )
        await update_recurring_notified_at(db, customer, notified_at)
        await db.commit()
