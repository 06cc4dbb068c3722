from datetime import datetime

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.database.models import PromoTariffActivation, PromoTariffCode


async def create_promo_tariff_code(
    db: AsyncSession,
    *,
    code: str,
    price: int,
    devices: int,
    months: int,
    max_activations: int,
    valid_hours: int,
    admin_id: int | None,
    valid_until: datetime | None = None,
) -> PromoTariffCode:
    promo = PromoTariffCode(
        code=code.strip().upper(),
        price=price,
        devices=devices,
        months=months,
        max_activations=max_activations,
        current_activations=0,
        valid_hours=valid_hours,
        is_active=True,
        created_by_admin_id=admin_id,
        valid_until=valid_until,
    )
    db.add(promo)
    await db.flush()
    return promo


async def get_promo_tariff_code_by_code(db: AsyncSession, code: str) -> PromoTariffCode | None:
    result = await db.execute(select(PromoTariffCode).where(PromoTariffCode.code == code.strip().upper()))
    return result.scalar_one_or_none()


async def get_promo_tariff_code_by_id(db: AsyncSession, promo_id: int) -> PromoTariffCode | None:
    return await db.get(PromoTariffCode, promo_id)


async def get_promo_tariff_codes(db: AsyncSession, *, limit: int = 20, offset: int = 0) -> list[PromoTariffCode]:
    result = await db.execute(
        select(PromoTariffCode)
        .order_by(PromoTariffCode.created_at.desc())
        .offset(max(0, offset))
        .limit(max(1, min(limit, 100)))
    )
    return list(result.scalars().all())


async def is_promo_tariff_code_used_by_customer(db: AsyncSession, promo_id: int, customer_id: int) -> bool:
    result = await db.execute(
        select(PromoTariffActivation.id).where(
            PromoTariffActivation.promo_tariff_id == promo_id,
            PromoTariffActivation.customer_id == customer_id,
        )
    )
    return result.scalar_one_or_none() is not None


async def record_promo_tariff_activation(db: AsyncSession, promo_id: int, customer_id: int) -> PromoTariffActivation:
    activation = PromoTariffActivation(promo_tariff_id=promo_id, customer_id=customer_id)
    db.add(activation)
    await db.flush()
    return activation


async def increment_promo_tariff_activations(db: AsyncSession, promo_id: int) -> None:
    await db.execute(
        update(PromoTariffCode)
        .where(PromoTariffCode.id == promo_id)
        .values(current_activations=PromoTariffCode.current_activations + 1)
    )


async def set_promo_tariff_code_active(db: AsyncSession, promo_id: int, is_active: bool) -> bool:
    result = await db.execute(
        update(PromoTariffCode).where(PromoTariffCode.id == promo_id).values(is_active=is_active)
    )
    return bool(result.rowcount)


async def delete_promo_tariff_code(db: AsyncSession, promo_id: int) -> bool:
    result = await db.execute(delete(PromoTariffCode).where(PromoTariffCode.id == promo_id))
    return bool(result.rowcount)


async def get_promo_tariff_activations(db: AsyncSession, promo_id: int) -> list[PromoTariffActivation]:
    result = await db.execute(
        select(PromoTariffActivation)
        .where(PromoTariffActivation.promo_tariff_id == promo_id)
        .order_by(PromoTariffActivation.activated_at.desc())
    )
    return list(result.scalars().all())
