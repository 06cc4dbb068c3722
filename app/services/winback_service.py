from __future__ import annotations

from datetime import UTC, datetime, timedelta

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings, settings as default_settings
from app.database.crud.customer import set_winback_offer
from app.database.crud.purchase import has_paid_purchases
from app.database.models import Customer, InvoiceType, OfferKind
from app.services.notification_service import CALLBACK_WINBACK, NotificationService
from app.services.offer_service import Offer, OfferPurchaseResult, OfferService


logger = structlog.get_logger(__name__)


async def should_send_winback_offer(db: AsyncSession, customer: Customer | None) -> bool:
    """Winback is a one-time incentive for customers who never paid."""
    if customer is None:
        return False
    if customer.winback_offer_sent_at is not None:
        return False
    return not await has_paid_purchases(db, customer.id)


class WinbackService:
    def __init__(
        self,
        offer_service: OfferService,
        notification_service: NotificationService | None = None,
        config: Settings | None = None,
    ):
        self.config = config or default_settings
        self.offer_service = offer_service
        self.notification_service = notification_service

    async def issue_offer(
        self,
        db: AsyncSession,
        customer: Customer,
        *,
        now: datetime | None = None,
    ) -> Offer | None:
        if not self.config.WINBACK_ENABLED:
            return None
        if not await should_send_winback_offer(db, customer):
            logger.debug('Winback offer not applicable', customer_id=customer.id)
            return None

        current = now or datetime.now(UTC)
        offer = Offer(
            kind=OfferKind.WINBACK,
            price=self.config.WINBACK_PRICE,
            devices=self.config.WINBACK_DEVICES,
            months=self.config.WINBACK_MONTHS,
            expires_at=current + timedelta(hours=self.config.WINBACK_VALID_HOURS),
        )
        await set_winback_offer(
            db,
            customer,
            sent_at=current,
            expires_at=offer.expires_at,
            price=offer.price,
            devices=offer.devices,
            months=offer.months,
        )
        await db.commit()
        logger.info(
            'Winback offer issued',
            customer_id=customer.id,
            price=offer.price,
            devices=offer.devices,
            months=offer.months,
            expires_at=offer.expires_at,
        )

        if self.notification_service is not None:
            await self.notification_service.send(
                customer.telegram_id,
                'winback_offer',
                language=customer.language,
                reply_markup=self.notification_service.button(
                    customer.language, 'winback_button', CALLBACK_WINBACK
                ),
                price=offer.price,
                devices=offer.devices,
                months=offer.months,
                hours=self.config.WINBACK_VALID_HOURS,
            )
        return offer

    async def activate_offer(
        self,
        db: AsyncSession,
        customer: Customer,
        invoice_type: InvoiceType,
        *,
        username: str | None = None,
        now: datetime | None = None,
    ) -> OfferPurchaseResult:
        return await self.offer_service.start_offer_purchase(
            db,
            customer,
            OfferKind.WINBACK,
            invoice_type,
            username=username,
            save_payment_method=self.config.WINBACK_RECURRING_ENABLED,
            now=now,
        )
