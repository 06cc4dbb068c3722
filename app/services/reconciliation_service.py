from __future__ import annotations

import asyncio
from collections.abc import Callable

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings, settings as default_settings
from app.database.crud.customer import get_customer_by_id, update_recurring_settings
from app.database.crud.purchase import get_purchase_by_id, get_purchases_by_invoice_type_and_status
from app.database.models import InvoiceType, PurchaseStatus
from app.external.cryptopay import CryptoInvoice, CryptoPayAPIError, CryptoPayClient, parse_invoice_payload
from app.external.yookassa import YooKassaAPIError, YooKassaClient, YooKassaPayment
from app.services.payment_service import PaymentService


logger = structlog.get_logger(__name__)


class ReconciliationService:
    """Polls the payment providers and settles pending purchases.

    Each provider has its own job; a failure on one purchase is logged and the
    rest of the batch keeps going. Whatever is left pending is picked up by the
    next tick.
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        payment_service: PaymentService,
        *,
        yookassa_client: YooKassaClient | None = None,
        cryptopay_client: CryptoPayClient | None = None,
        config: Settings | None = None,
    ):
        self.config = config or default_settings
        self.session_factory = session_factory
        self.payment_service = payment_service
        self.yookassa_client = yookassa_client
        self.cryptopay_client = cryptopay_client

    async def check_crypto_invoices(self) -> None:
        if self.cryptopay_client is None:
            return

        async with self.session_factory() as db:
            purchases = await get_purchases_by_invoice_type_and_status(db, InvoiceType.CRYPTO, PurchaseStatus.PENDING)
            # ids only: a rollback after a failed invoice expires the loaded rows
            by_invoice_id = {
                purchase.crypto_invoice_id: purchase.id for purchase in purchases if purchase.crypto_invoice_id
            }
            if not by_invoice_id:
                return

            try:
                invoices = await self.cryptopay_client.get_invoices(list(by_invoice_id))
            except CryptoPayAPIError as exc:
                logger.error('Failed to fetch crypto invoices', count=len(by_invoice_id), exc=exc)
                return

            for invoice in invoices:
                purchase_id = by_invoice_id.get(invoice.invoice_id)
                try:
                    await self._apply_crypto_invoice(db, invoice, purchase_id)
                except Exception as exc:
                    await db.rollback()
                    logger.error(
                        'Failed to reconcile crypto invoice',
                        invoice_id=invoice.invoice_id,
                        purchase_id=purchase_id,
                        exc=exc,
                    )

    async def _apply_crypto_invoice(
        self,
        db: AsyncSession,
        invoice: CryptoInvoice,
        known_purchase_id: int | None,
    ) -> None:
        payload_purchase_id, username = parse_invoice_payload(invoice.payload)
        purchase_id = payload_purchase_id or known_purchase_id
        if purchase_id is None:
            logger.warning('Crypto invoice without purchase reference', invoice_id=invoice.invoice_id)
            return

        if invoice.is_paid:
            await self.payment_service.process_purchase_by_id(db, purchase_id, username=username)
        elif invoice.is_expired:
            await self.payment_service.cancel_purchase(db, purchase_id)

    async def check_yookassa_invoices(self) -> None:
        if self.yookassa_client is None:
            return

        delay = self.config.YOOKASSA_REQUEST_DELAY_MS / 1000
        async with self.session_factory() as db:
            purchases = await get_purchases_by_invoice_type_and_status(db, InvoiceType.YOOKASA, PurchaseStatus.PENDING)
            pending = [(purchase.id, purchase.yookasa_id) for purchase in purchases if purchase.yookasa_id]
            for index, (purchase_id, payment_id) in enumerate(pending):
                if index and delay:
                    await asyncio.sleep(delay)

                try:
                    payment = await self.yookassa_client.get_payment(payment_id)
                except YooKassaAPIError as exc:
                    logger.error(
                        'Failed to fetch YooKassa payment',
                        purchase_id=purchase_id,
                        payment_id=payment_id,
                        status_code=exc.status_code,
                        exc=exc,
                    )
                    continue
                except Exception as exc:
                    logger.error(
                        'Unexpected error while fetching YooKassa payment',
                        purchase_id=purchase_id,
                        payment_id=payment_id,
                        exc=exc,
                    )
                    continue

                try:
                    await self._apply_yookassa_payment(db, purchase_id, payment)
                except Exception as exc:
                    await db.rollback()
                    logger.error(
                        'Failed to reconcile YooKassa payment',
                        purchase_id=purchase_id,
                        payment_id=payment.id,
                        exc=exc,
                    )

    async def _apply_yookassa_payment(self, db: AsyncSession, purchase_id: int, payment: YooKassaPayment) -> None:
        if payment.is_cancelled:
            await self.payment_service.cancel_purchase(db, purchase_id)
            return
        if not payment.is_succeeded:
            return

        processed = await self.payment_service.process_purchase_by_id(
            db, purchase_id, username=payment.metadata.get('username') or None
        )
        if processed:
            await self._store_recurring_settings(db, purchase_id, payment)

    async def _store_recurring_settings(self, db: AsyncSession, purchase_id: int, payment: YooKassaPayment) -> None:
        if not self.config.RECURRING_PAYMENTS_ENABLED:
            return
        if not payment.payment_method_saved or not payment.payment_method_id:
            return

        months = payment.metadata_int('recurring_months')
        amount = payment.metadata_int('recurring_amount')
        if not months or not amount:
            return

        purchase = await get_purchase_by_id(db, purchase_id)
        customer = await get_customer_by_id(db, purchase.customer_id) if purchase else None
        if customer is None:
            return

        await update_recurring_settings(
            db,
            customer,
            enabled=True,
            payment_method_id=payment.payment_method_id,
            tariff_name=payment.metadata.get('recurring_tariff_name') or purchase.tariff_name,
            months=months,
            amount=amount,
        )
        await db.commit()
        logger.info(
            'Saved payment method for recurring charges', customer_id=customer.id, months=months, amount=amount
        )
