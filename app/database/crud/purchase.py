from datetime import UTC, datetime, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.database.models import InvoiceType, Purchase, PurchaseStatus


class PurchaseStatusError(Exception):
    def __init__(self, purchase_id: int | None, current: str, target: str):
        self.purchase_id = purchase_id
        self.current = current
        self.target = target
        super().__init__(f'Purchase {purchase_id}: illegal transition {current} -> {target}')


def _transition(purchase: Purchase, target: PurchaseStatus) -> None:
    if not purchase.can_transition_to(target):
        raise PurchaseStatusError(purchase.id, purchase.status, target.value)
    purchase.status = target.value


async def create_purchase(
    db: AsyncSession,
    *,
    customer_id: int,
    amount: float,
    month: int,
    invoice_type: InvoiceType,
    currency: str = 'RUB',
    tariff_name: str | None = None,
    device_limit: int | None = None,
    offer_kind: str | None = None,
) -> Purchase:
    purchase = Purchase(
        customer_id=customer_id,
        amount=amount,
        currency=currency,
        month=month,
        invoice_type=invoice_type.value,
        status=PurchaseStatus.NEW.value,
        tariff_name=tariff_name,
        device_limit=device_limit,
        offer_kind=offer_kind,
    )
    db.add(purchase)
    await db.flush()
    return purchase


async def get_purchase_by_id(db: AsyncSession, purchase_id: int) -> Purchase | None:
    return await db.get(Purchase, purchase_id)


async def get_purchases_by_invoice_type_and_status(
    db: AsyncSession,
    invoice_type: InvoiceType,
    status: PurchaseStatus,
) -> list[Purchase]:
    result = await db.execute(
        select(Purchase)
        .where(Purchase.invoice_type == invoice_type.value, Purchase.status == status.value)
        .order_by(Purchase.id)
    )
    return list(result.scalars().all())


async def mark_purchase_as_pending(
    db: AsyncSession,
    purchase: Purchase,
    *,
    yookasa_id: str | None = None,
    yookasa_url: str | None = None,
    crypto_invoice_id: int | None = None,
    crypto_invoice_url: str | None = None,
) -> Purchase:
    _transition(purchase, PurchaseStatus.PENDING)
    if yookasa_id is not None:
        purchase.yookasa_id = yookasa_id
        purchase.yookasa_url = yookasa_url
    if crypto_invoice_id is not None:
        purchase.crypto_invoice_id = crypto_invoice_id
        purchase.crypto_invoice_url = crypto_invoice_url
    await db.flush()
    return purchase


async def mark_purchase_as_paid(db: AsyncSession, purchase: Purchase, *, expire_at: datetime | None = None) -> Purchase:
    _transition(purchase, PurchaseStatus.PAID)
    purchase.paid_at = datetime.now(UTC)
    if expire_at is not None:
        purchase.expire_at = expire_at
    await db.flush()
    return purchase


async def mark_purchase_as_cancelled(db: AsyncSession, purchase: Purchase) -> Purchase:
    _transition(purchase, PurchaseStatus.CANCEL)
    await db.flush()
    return purchase


async def has_paid_purchases(db: AsyncSession, customer_id: int) -> bool:
    result = await db.execute(
        select(Purchase.id)
        .where(Purchase.customer_id == customer_id, Purchase.status == PurchaseStatus.PAID.value)
        .limit(1)
    )
    return result.scalar_one_or_none() is not None


async def has_recent_paid_purchase(db: AsyncSession, customer_id: int, within_minutes: int) -> bool:
    cutoff = datetime.now(UTC) - timedelta(minutes=within_minutes)
    result = await db.execute(
        select(Purchase.id)
        .where(
            Purchase.customer_id == customer_id,
            Purchase.status == PurchaseStatus.PAID.value,
            Purchase.paid_at >= cutoff,
        )
        .limit(1)
    )
    return result.scalar_one_or_none() is not None


async def get_last_paid_purchase(
    db: AsyncSession,
    customer_id: int,
    invoice_types: tuple[InvoiceType, ...] = (InvoiceType.YOOKASA, InvoiceType.CRYPTO),
) -> Purchase | None:
    result = await db.execute(
        select(Purchase)
        .where(
            Purchase.customer_id == customer_id,
            Purchase.status == PurchaseStatus.PAID.value,
            Purchase.invoice_type.in_([invoice_type.value for invoice_type in invoice_types]),
        )
        .order_by(Purchase.paid_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()
