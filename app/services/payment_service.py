from __future__ import annotations

from dataclasses import dataclass

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings, settings as default_settings
from app.database.crud.customer import get_customer_by_id, update_customer_expire_at
from app.database.crud.purchase import (
    create_purchase as create_purchase_record,
    get_purchase_by_id,
    mark_purchase_as_cancelled,
    mark_purchase_as_paid,
    mark_purchase_as_pending,
)
from app.database.models import Customer, InvoiceType, OfferKind, Purchase, PurchaseStatus
from app.external.cryptopay import CryptoPayClient
from app.external.yookassa import YooKassaClient
from app.services.notification_service import NotificationService
from app.services.offer_service import clear_offer_snapshot
from app.services.remnawave_service import RemnaWaveService


logger = structlog.get_logger(__name__)


class PurchaseNotFoundError(Exception):
    def __init__(self, purchase_id: int):
        self.purchase_id = purchase_id
        super().__init__(f'Purchase {purchase_id} not found')


class PaymentProviderUnavailableError(Exception):
    pass


@dataclass
class CheckoutResult:
    purchase: Purchase
    payment_url: str | None = None
    stars_payload: str | None = None


def build_stars_payload(purchase_id: int, username: str | None) -> str:
    return f'{purchase_id}&{username or ""}'


def parse_stars_payload(payload: str | None) -> tuple[int | None, str | None]:
    """``"{purchase_id}&{username}"`` as sent with a Telegram Stars invoice."""
    if not payload:
        return None, None
    raw_id, _, username = payload.partition('&')
    try:
        return int(raw_id), username or None
    except ValueError:
        return None, username or None


class PaymentService:
    def __init__(
        self,
        *,
        config: Settings | None = None,
        remnawave_service: RemnaWaveService | None = None,
        notification_service: NotificationService | None = None,
        yookassa_client: YooKassaClient | None = None,
        cryptopay_client: CryptoPayClient | None = None,
    ):
        self.config = config or default_settings
        self.remnawave_service = remnawave_service or RemnaWaveService(self.config)
        self.notification_service = notification_service
        self.yookassa_client = yookassa_client
        self.cryptopay_client = cryptopay_client

    async def create_purchase(
        self,
        db: AsyncSession,
        customer: Customer,
        *,
        amount: int,
        months: int,
        invoice_type: InvoiceType,
        tariff_name: str | None = None,
        device_limit: int | None = None,
        offer_kind: OfferKind | None = None,
        username: str | None = None,
        save_payment_method: bool = False,
    ) -> CheckoutResult:
        purchase = await create_purchase_record(
            db,
            customer_id=customer.id,
            amount=amount,
            month=months,
            invoice_type=invoice_type,
            currency='STARS' if invoice_type == InvoiceType.TELEGRAM else 'RUB',
            tariff_name=tariff_name,
            device_limit=device_limit,
            offer_kind=offer_kind.value if offer_kind else None,
        )

        result = CheckoutResult(purchase=purchase)
        if invoice_type == InvoiceType.YOOKASA:
            if self.yookassa_client is None:
                raise PaymentProviderUnavailableError('YooKassa is not configured')
            payment = await self.yookassa_client.create_invoice(
                amount=amount,
                months=months,
                customer_id=customer.id,
                purchase_id=purchase.id,
                username=username or '',
                save_payment_method=save_payment_method and self.config.RECURRING_PAYMENTS_ENABLED,
                tariff_name=tariff_name,
            )
            await mark_purchase_as_pending(
                db, purchase, yookasa_id=payment.id, yookasa_url=payment.confirmation_url
            )
            result.payment_url = payment.confirmation_url
        elif invoice_type == InvoiceType.CRYPTO:
            if self.cryptopay_client is None:
                raise PaymentProviderUnavailableError('Crypto Pay is not configured')
            invoice = await self.cryptopay_client.create_invoice(
                amount=amount,
                purchase_id=purchase.id,
                username=username,
                description=f'Подписка на {months} мес.',
            )
            await mark_purchase_as_pending(
                db,
                purchase,
                crypto_invoice_id=invoice.invoice_id,
                crypto_invoice_url=invoice.bot_invoice_url,
            )
            result.payment_url = invoice.bot_invoice_url
        elif invoice_type == InvoiceType.TELEGRAM:
            result.stars_payload = build_stars_payload(purchase.id, username)
        elif invoice_type == InvoiceType.TRIBUTE:
            tariff = self.config.get_tariff_by_name(tariff_name)
            result.payment_url = tariff.tribute_url if tariff else None

        await db.commit()
        logger.info(
            'Created purchase',
            purchase_id=purchase.id,
            customer_id=customer.id,
            invoice_type=invoice_type.value,
            amount=amount,
            months=months,
        )
        return result

    def _resolve_device_limit(self, purchase: Purchase) -> int | None:
        if purchase.device_limit is not None:
            return purchase.device_limit
        tariff = self.config.get_tariff_by_name(purchase.tariff_name)
        return tariff.devices if tariff else None

    async def process_purchase_by_id(
        self,
        db: AsyncSession,
        purchase_id: int,
        *,
        username: str | None = None,
        notify: bool = True,
    ) -> bool:
        """Grant the entitlement for a paid purchase.

        Reconciliation jobs and webhooks can both reach this for the same
        purchase; the status check below is what keeps the grant at-most-once.
        Returns ``False`` when the purchase was already paid.
        """
        purchase = await get_purchase_by_id(db, purchase_id)
        if purchase is None:
            raise PurchaseNotFoundError(purchase_id)

        if purchase.status == PurchaseStatus.PAID.value:
            logger.info('Purchase already processed', purchase_id=purchase_id)
            return False
        if purchase.status == PurchaseStatus.CANCEL.value:
            logger.warning('Refusing to process cancelled purchase', purchase_id=purchase_id)
            return False

        customer = await get_customer_by_id(db, purchase.customer_id)
        if customer is None:
            raise ValueError(f'Customer {purchase.customer_id} of purchase {purchase_id} not found')

        days = purchase.month * self.config.DAYS_IN_MONTH
        user = await self.remnawave_service.create_or_update_user(
            customer_id=customer.id,
            telegram_id=customer.telegram_id,
            traffic_limit_bytes=self.config.traffic_limit_bytes,
            days=days,
            is_trial=False,
            device_limit=self._resolve_device_limit(purchase),
            description=username,
        )

        await mark_purchase_as_paid(db, purchase, expire_at=user.expire_at)
        await update_customer_expire_at(
            db, customer, expire_at=user.expire_at, subscription_link=user.subscription_url
        )
        if purchase.offer_kind:
            await clear_offer_snapshot(db, customer, OfferKind(purchase.offer_kind))
        await db.commit()

        logger.info(
            'Purchase processed',
            purchase_id=purchase_id,
            customer_id=customer.id,
            days=days,
            expire_at=user.expire_at,
        )

        if notify and self.notification_service is not None:
            await self.notification_service.send(
                customer.telegram_id,
                'purchase_success',
                language=customer.language,
                expire_at=user.expire_at.strftime('%d.%m.%Y') if user.expire_at else '',
            )
        return True

    async def cancel_purchase(self, db: AsyncSession, purchase_id: int) -> bool:
        purchase = await get_purchase_by_id(db, purchase_id)
        if purchase is None:
            raise PurchaseNotFoundError(purchase_id)
        if purchase.is_terminal:
            return False

        await mark_purchase_as_cancelled(db, purchase)
        await db.commit()
        logger.info('Purchase cancelled', purchase_id=purchase_id)
        return True

