from __future__ import annotations

from enum import Enum

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings, settings as default_settings
from app.database.crud.customer import get_customer_by_telegram_id
from app.database.crud.purchase import create_purchase
from app.database.models import InvoiceType
from app.services.payment_service import PaymentService
from app.webapi.schemas.webhooks import TributeWebhookPayload


logger = structlog.get_logger(__name__)

EVENT_NEW_SUBSCRIPTION = 'new_subscription'
EVENT_CANCELLED_SUBSCRIPTION = 'cancelled_subscription'

_PERIOD_MONTHS = {
    'monthly': 1,
    'quarterly': 3,
    '3-month': 3,
    '3months': 3,
    '3-months': 3,
    'q': 3,
    'halfyearly': 6,
    'yearly': 12,
    'annual': 12,
    'y': 12,
}


class TributeOutcome(Enum):
    PROCESSED = 'processed'
    IGNORED = 'ignored'
    CUSTOMER_NOT_FOUND = 'customer_not_found'


def period_to_months(period: str | None) -> int:
    return _PERIOD_MONTHS.get((period or '').strip().lower(), 1)


class TributeService:
    def __init__(self, payment_service: PaymentService, config: Settings | None = None):
        self.config = config or default_settings
        self.payment_service = payment_service

    async def handle(self, db: AsyncSession, webhook: TributeWebhookPayload) -> TributeOutcome:
        if not webhook.name:
            logger.info('Tribute test webhook received')
            return TributeOutcome.IGNORED

        if webhook.payload is None or webhook.name not in (EVENT_NEW_SUBSCRIPTION, EVENT_CANCELLED_SUBSCRIPTION):
            return TributeOutcome.IGNORED

        customer = await get_customer_by_telegram_id(db, webhook.payload.telegram_user_id)
        if customer is None:
            logger.warning(
                'Tribute webhook customer not found',
                event=webhook.name,
                telegram_id=webhook.payload.telegram_user_id,
            )
            return TributeOutcome.CUSTOMER_NOT_FOUND

        if webhook.name == EVENT_CANCELLED_SUBSCRIPTION:
            # access runs until the already paid period ends
            logger.info(
                'Tribute subscription cancelled',
                customer_id=customer.id,
                subscription_id=webhook.payload.subscription_id,
            )
            return TributeOutcome.PROCESSED

        data = webhook.payload
        months = period_to_months(data.period)
        tariff = self.config.get_tariff_by_tribute_name(data.subscription_name)
        if tariff is None:
            logger.info('Tribute subscription has no matching tariff', subscription_name=data.subscription_name)

        purchase = await create_purchase(
            db,
            customer_id=customer.id,
            amount=data.amount,
            month=months,
            invoice_type=InvoiceType.TRIBUTE,
            currency=data.currency.upper() if data.currency else 'RUB',
            tariff_name=tariff.name if tariff else None,
            device_limit=tariff.devices if tariff else None,
        )
        await db.commit()

        await self.payment_service.process_purchase_by_id(db, purchase.id)
        logger.info(
            'Tribute subscription processed',
            customer_id=customer.id,
            purchase_id=purchase.id,
            months=months,
            tariff=tariff.name if tariff else None,
        )
        return TributeOutcome.PROCESSED
