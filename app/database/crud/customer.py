from datetime import UTC, datetime, timedelta

from sqlalchemy import and_, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.database.models import Customer, Purchase, PurchaseStatus


BROADCAST_TARGET_ALL = 'all'
BROADCAST_TARGET_ACTIVE = 'active'
BROADCAST_TARGET_INACTIVE = 'inactive'
BROADCAST_TARGET_EXPIRING = 'expiring'

BROADCAST_TARGETS = (
    BROADCAST_TARGET_ALL,
    BROADCAST_TARGET_ACTIVE,
    BROADCAST_TARGET_INACTIVE,
    BROADCAST_TARGET_EXPIRING,
)


async def get_customer_by_id(db: AsyncSession, customer_id: int) -> Customer | None:
    return await db.get(Customer, customer_id)


async def get_customer_by_telegram_id(db: AsyncSession, telegram_id: int) -> Customer | None:
    result = await db.execute(select(Customer).where(Customer.telegram_id == telegram_id))
    return result.scalar_one_or_none()


async def get_or_create_customer(db: AsyncSession, *, telegram_id: int, language: str) -> Customer:
    customer = await get_customer_by_telegram_id(db, telegram_id)
    if customer is not None:
        return customer

    customer = Customer(telegram_id=telegram_id, language=language)
    db.add(customer)
    try:
        await db.flush()
    except IntegrityError:
        # concurrent first interaction created the row
        await db.rollback()
        customer = await get_customer_by_telegram_id(db, telegram_id)
        if customer is None:
            raise
    return customer


async def update_customer_expire_at(
    db: AsyncSession,
    customer: Customer,
    *,
    expire_at: datetime,
    subscription_link: str | None = None,
) -> Customer:
    customer.expire_at = expire_at
    if subscription_link:
        customer.subscription_link = subscription_link
    await db.flush()
    return customer


async def update_recurring_settings(
    db: AsyncSession,
    customer: Customer,
    *,
    enabled: bool,
    payment_method_id: str | None,
    tariff_name: str | None,
    months: int | None,
    amount: int | None,
) -> Customer:
    customer.recurring_enabled = enabled
    customer.payment_method_id = payment_method_id
    customer.recurring_tariff_name = tariff_name
    customer.recurring_months = months
    customer.recurring_amount = amount
    await db.flush()
    return customer


async def disable_recurring(db: AsyncSession, customer: Customer) -> Customer:
    # payment_method_id is kept so the customer can re-enable without a new checkout
    customer.recurring_enabled = False
    await db.flush()
    return customer


async def delete_payment_method(db: AsyncSession, customer: Customer) -> Customer:
    customer.recurring_enabled = False
    customer.payment_method_id = None
    await db.flush()
    return customer


async def update_recurring_notified_at(db: AsyncSession, customer: Customer, notified_at: datetime) -> None:
    customer.recurring_notified_at = notified_at
    await db.flush()


async def update_trial_inactive_notified_at(db: AsyncSession, customer: Customer, notified_at: datetime) -> None:
    customer.trial_inactive_notified_at = notified_at
    await db.flush()


async def set_winback_offer(
    db: AsyncSession,
    customer: Customer,
    *,
    sent_at: datetime,
    expires_at: datetime,
    price: int,
    devices: int,
    months: int,
) -> Customer:
    customer.winback_offer_sent_at = sent_at
    customer.winback_offer_expires_at = expires_at
    customer.winback_offer_price = price
    customer.winback_offer_devices = devices
    customer.winback_offer_months = months
    await db.flush()
    return customer


async def clear_winback_offer(db: AsyncSession, customer: Customer) -> Customer:
    customer.winback_offer_sent_at = None
    customer.winback_offer_expires_at = None
    customer.winback_offer_price = None
    customer.winback_offer_devices = None
    customer.winback_offer_months = None
    await db.flush()
    return customer


async def set_promo_offer(
    db: AsyncSession,
    customer: Customer,
    *,
    price: int,
    devices: int,
    months: int,
    expires_at: datetime,
    code_id: int,
) -> Customer:
    customer.promo_offer_price = price
    customer.promo_offer_devices = devices
    customer.promo_offer_months = months
    customer.promo_offer_expires_at = expires_at
    customer.promo_offer_code_id = code_id
    await db.flush()
    return customer


async def clear_promo_offer(db: AsyncSession, customer: Customer) -> Customer:
    customer.promo_offer_price = None
    customer.promo_offer_devices = None
    customer.promo_offer_months = None
    customer.promo_offer_expires_at = None
    customer.promo_offer_code_id = None
    await db.flush()
    return customer


def _without_paid_purchases():
    paid = (
        select(Purchase.id)
        .where(Purchase.customer_id == Customer.id, Purchase.status == PurchaseStatus.PAID.value)
        .exists()
    )
    return ~paid


async def get_trial_customers_for_inactive_notification(
    db: AsyncSession,
    *,
    now: datetime | None = None,
) -> list[Customer]:
    current = now or datetime.now(UTC)
    query = select(Customer).where(
        Customer.expire_at.is_not(None),
        Customer.expire_at > current,
        Customer.created_at <= current - timedelta(hours=1),
        Customer.created_at >= current - timedelta(hours=2),
        Customer.trial_inactive_notified_at.is_(None),
        _without_paid_purchases(),
    )
    return list((await db.execute(query)).scalars().all())


def _broadcast_target_filter(target_type: str, now: datetime):
    if target_type == BROADCAST_TARGET_ACTIVE:
        return and_(Customer.expire_at.is_not(None), Customer.expire_at > now)
    if target_type == BROADCAST_TARGET_INACTIVE:
        return (Customer.expire_at.is_(None)) | (Customer.expire_at <= now)
    if target_type == BROADCAST_TARGET_EXPIRING:
        return and_(Customer.expire_at > now, Customer.expire_at <= now + timedelta(days=3))
    return None


async def get_customers_for_broadcast(db: AsyncSession, target_type: str) -> list[Customer]:
    if target_type not in BROADCAST_TARGETS:
        raise ValueError(f'Unknown broadcast target: {target_type}')

    query = select(Customer).order_by(Customer.id)
    condition = _broadcast_target_filter(target_type, datetime.now(UTC))
    if condition is not None:
        query = query.where(condition)
    return list((await db.execute(query)).scalars().all())


async def count_customers_for_broadcast(db: AsyncSession, target_type: str) -> int:
    if target_type not in BROADCAST_TARGETS:
        raise ValueError(f'Unknown broadcast target: {target_type}')

    query = select(func.count(Customer.id))
    condition = _broadcast_target_filter(target_type, datetime.now(UTC))
    if condition is not None:
        query = query.where(condition)
    return int((await db.execute(query)).scalar() or 0)
