from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings, settings as default_settings
from app.database.crud.customer import get_customer_by_telegram_id
from app.database.models import Customer
from app.services.notification_service import CALLBACK_BUY, NotificationService
from app.services.recurring_billing_service import RecurringBillingService
from app.services.winback_service import WinbackService
from app.webapi.schemas.webhooks import RemnawaveWebhookPayload, RemnawaveWebhookUser


logger = structlog.get_logger(__name__)

EVENT_EXPIRES_IN_48_HOURS = 'user.expires_in_48_hours'
EVENT_EXPIRES_IN_24_HOURS = 'user.expires_in_24_hours'
EVENT_EXPIRED = 'user.expired'
EVENT_EXPIRED_24_HOURS_AGO = 'user.expired_24_hours_ago'

ACTIONABLE_EVENTS = frozenset({EVENT_EXPIRES_IN_24_HOURS, EVENT_EXPIRED, EVENT_EXPIRED_24_HOURS_AGO})


class WebhookOutcome(Enum):
    PROCESSED = 'processed'
    IGNORED = 'ignored'
    # panel account was never used, nothing to remind about
    NOT_CONNECTED = 'not_connected'
    CUSTOMER_NOT_FOUND = 'customer_not_found'


class RemnawaveWebhookService:
    """Subscription lifecycle events pushed by the panel."""

    def __init__(
        self,
        notification_service: NotificationService,
        *,
        recurring_billing_service: RecurringBillingService | None = None,
        winback_service: WinbackService | None = None,
        config: Settings | None = None,
    ):
        self.config = config or default_settings
        self.notification_service = notification_service
        self.recurring_billing_service = recurring_billing_service
        self.winback_service = winback_service

    def _recurring_applies(self, customer: Customer) -> bool:
        return (
            self.config.RECURRING_PAYMENTS_ENABLED
            and self.recurring_billing_service is not None
            and customer.has_recurring_method
        )

    async def _resolve_customer(self, db: AsyncSession, data: RemnawaveWebhookUser) -> Customer | None:
        if data.telegram_id is None:
            return None
        return await get_customer_by_telegram_id(db, data.telegram_id)

    async def handle(self, db: AsyncSession, payload: RemnawaveWebhookPayload) -> WebhookOutcome:
        if payload.event not in ACTIONABLE_EVENTS:
            return WebhookOutcome.IGNORED

        data = payload.data
        if data.first_connected_at is None:
            logger.debug('Skipping webhook for never connected user', event=payload.event, uuid=data.uuid)
            return WebhookOutcome.NOT_CONNECTED

        customer = await self._resolve_customer(db, data)
        if customer is None:
            logger.warning('Webhook customer not found', event=payload.event, telegram_id=data.telegram_id)
            return WebhookOutcome.CUSTOMER_NOT_FOUND

        log = logger.bind(event=payload.event, customer_id=customer.id)
        if payload.event == EVENT_EXPIRES_IN_24_HOURS:
            await self._on_expires_in_24_hours(db, customer)
        elif payload.event == EVENT_EXPIRED:
            await self._on_expired(db, customer)
        elif payload.event == EVENT_EXPIRED_24_HOURS_AGO:
            await self._on_expired_24_hours_ago(db, customer)
        log.info('Webhook processed')
        return WebhookOutcome.PROCESSED

    async def _send_with_buy_button(self, customer: Customer, key: str) -> None:
        await self.notification_service.send(
            customer.telegram_id,
            key,
            language=customer.language,
            reply_markup=self.notification_service.button(customer.language, 'renew_button', CALLBACK_BUY),
        )

    async def _on_expires_in_24_hours(self, db: AsyncSession, customer: Customer) -> None:
        if self._recurring_applies(customer):
            await self.recurring_billing_service.notify_upcoming_charge(db, customer, datetime.now(UTC))
            return
        await self._send_with_buy_button(customer, 'subscription_expiring_1day')

    async def _on_expired(self, db: AsyncSession, customer: Customer) -> None:
        if self._recurring_applies(customer):
            result = await self.recurring_billing_service.charge(db, customer)
            logger.info('Recurring charge finished', customer_id=customer.id, result=result.value)
            return
        await self._send_with_buy_button(customer, 'subscription_expired')

    async def _on_expired_24_hours_ago(self, db: AsyncSession, customer: Customer) -> None:
        if self.winback_service is None:
            return
        await self.winback_service.issue_offer(db, customer)
