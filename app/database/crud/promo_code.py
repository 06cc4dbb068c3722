from datetime import datetime

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.database.models import PromoCode, PromoCodeActivation


async def create_promo_code(
    db: AsyncSession,
    *,
    code: str,
    bonus_days: int,
    max_activations: int,
    admin_id: int | None,
    valid_until: datetime | None = None,
) -> PromoCode:
    promo = PromoCode(
        code=code.strip().upper(),
        bonus_days=bonus_days,
        max_activations=max_activations,
        current_activations=0,
        is_active=True,
        created_by_admin_id=admin_id,
        valid_until=valid_until,
    )
    db.add(promo)
    await db.flush()
    return promo


async def get_promo_code_by_code(db: AsyncSession, code: str) -> PromoCode | None:
    result = await db.execute(select(PromoCode).where(PromoCode.code == code.strip().upper()))
    return result.scalar_one_or_none()


async def get_promo_code_by_id(db: AsyncSession, promo_id: int) -> PromoCode | None:
    return await db.get(PromoCode, promo_id)


async def get_promo_codes(db: AsyncSession, *, limit: int = 20, offset: int = 0) -> list[PromoCode]:
    result = await db.execute(
        select(PromoCode)
        .order_by(PromoCode.created_at.desc())
        .offset(max(0, offset))
        .limit(max(1, min(limit, 100)))
    )
    return list(result.scalars().all())


async def is_promo_code_used_by_customer(db: AsyncSession, promo_id: int, customer_id: int) -> bool:
    result = await db.execute(
        select(PromoCodeActivation.id).where(
            PromoCodeActivation.promo_code_id == promo_id,
            PromoCodeActivation.customer_id == customer_id,
        )
    )
    return result.scalar_one_or_none() is not None


async def record_promo_code_activation(db: AsyncSession, promo_id: int, customer_id: int) -> PromoCodeActivation:
    activation = PromoCodeActivation(promo_code_id=promo_id, customer_id=customer_id)
    db.add(activation)
    await db.flush()
    return activation


async def increment_promo_code_activations(db: AsyncSession, promo_id: int) -> None:
    await db.execute(
        update(PromoCode)
        .where(PromoCode.id == promo_id)
        .values(current_activations=PromoCode.current_activations + 1)
    )


async def set_promo_code_active(db: AsyncSession, promo_id: int, is_active: bool) -> bool:
    result = await db.execute(update(PromoCode).where(PromoCode.id == promo_id).values(is_active=is_active))
    return bool(result.rowcount)


async def delete_promo_code(db: AsyncSession, promo_id: int) -> bool:
    result = await db.execute(delete(PromoCode).where(PromoCode.id == promo_id))
    return bool(result.rowcount)


async def get_promo_code_activations(db: AsyncSession, promo_id: int) -> list[PromoCodeActivation]:
    result = await db.execute(
        select(PromoCodeActivation)
        .where(PromoCodeActivation.promo_code_id == promo_id)
        .order_by(PromoCodeActivation.activated_at.desc())
    )
    return list(result.scalars().all())
