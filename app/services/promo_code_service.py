from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings, settings as default_settings
from app.database.crud.customer import update_customer_expire_at
from app.database.crud.promo_code import (
    create_promo_code,
    delete_promo_code,
    get_promo_code_by_code,
    get_promo_code_by_id,
    increment_promo_code_activations,
    is_promo_code_used_by_customer,
    record_promo_code_activation,
    set_promo_code_active,
)
from app.database.models import Customer, OfferKind, PromoCode
from app.external.remnawave_api import RemnaWaveAPIError
from app.services.offer_service import CodeStrategy, is_valid_code_format, normalize_code, validate_code_activation
from app.services.remnawave_service import RemnaWaveConfigurationError, RemnaWaveService


logger = structlog.get_logger(__name__)


@dataclass
class PromoApplyResult:
    success: bool
    error_key: str | None = None
    bonus_days: int = 0
    new_expire_at: datetime | None = None


@dataclass
class PromoCodeCreateResult:
    promo: PromoCode | None = None
    error_key: str | None = None


def validate_promo_code(code: str | None, bonus_days: int, max_activations: int) -> str | None:
    normalized = normalize_code(code)
    if not normalized:
        return 'promo_code_empty'
    if not is_valid_code_format(normalized):
        return 'promo_invalid_format'
    if bonus_days <= 0:
        return 'promo_invalid_bonus_days'
    if max_activations <= 0:
        return 'promo_invalid_max_activations'
    return None


class PromoCodeService:
    def __init__(self, config: Settings | None = None, remnawave_service: RemnaWaveService | None = None):
        self.config = config or default_settings
        self.remnawave_service = remnawave_service or RemnaWaveService(self.config)

    @staticmethod
    def _strategy() -> CodeStrategy:
        return CodeStrategy(
            kind=OfferKind.PROMO,
            get_by_code=get_promo_code_by_code,
            is_used_by_customer=is_promo_code_used_by_customer,
        )

    async def apply_promo_code(
        self,
        db: AsyncSession,
        customer: Customer,
        raw_code: str | None,
        *,
        now: datetime | None = None,
    ) -> PromoApplyResult:
        try:
            validation = await validate_code_activation(db, self._strategy(), raw_code, customer.id, now)
        except Exception as exc:
            logger.error('Failed to validate promo code', customer_id=customer.id, exc=exc)
            return PromoApplyResult(success=False, error_key='promo_error')

        if not validation.ok:
            logger.info('Promo code rejected', customer_id=customer.id, error_key=validation.error_key)
            return PromoApplyResult(success=False, error_key=validation.error_key)

        promo = validation.code
        try:
            user = await self.remnawave_service.create_or_update_user(
                customer_id=customer.id,
                telegram_id=customer.telegram_id,
                traffic_limit_bytes=self.config.traffic_limit_bytes,
                days=promo.bonus_days,
            )
        except (RemnaWaveAPIError, RemnaWaveConfigurationError) as exc:
            logger.error('Failed to apply promo code bonus days', customer_id=customer.id, promo_id=promo.id, exc=exc)
            return PromoApplyResult(success=False, error_key='promo_apply_error')

        await update_customer_expire_at(db, customer, expire_at=user.expire_at, subscription_link=user.subscription_url)
        await db.commit()

        # the grant above is final; activation bookkeeping must not undo it
        try:
            await record_promo_code_activation(db, promo.id, customer.id)
            await increment_promo_code_activations(db, promo.id)
            await db.commit()
        except Exception as exc:
            await db.rollback()
            logger.error(
                'Failed to record promo code activation',
                customer_id=customer.id,
                promo_id=promo.id,
                exc=exc,
            )

        logger.info(
            'Promo code applied',
            customer_id=customer.id,
            promo_id=promo.id,
            bonus_days=promo.bonus_days,
            expire_at=user.expire_at,
        )
        return PromoApplyResult(success=True, bonus_days=promo.bonus_days, new_expire_at=user.expire_at)

    async def create_code(
        self,
        db: AsyncSession,
        *,
        code: str,
        bonus_days: int,
        max_activations: int,
        admin_id: int | None = None,
        valid_until: datetime | None = None,
    ) -> PromoCodeCreateResult:
        error_key = validate_promo_code(code, bonus_days, max_activations)
        if error_key:
            return PromoCodeCreateResult(error_key=error_key)

        if await get_promo_code_by_code(db, normalize_code(code)) is not None:
            return PromoCodeCreateResult(error_key='promo_code_exists')

        promo = await create_promo_code(
            db,
            code=normalize_code(code),
            bonus_days=bonus_days,
            max_activations=max_activations,
            admin_id=admin_id,
            valid_until=valid_until,
        )
        await db.commit()
        await db.refresh(promo)
        logger.info('Promo code created', promo_id=promo.id, code=promo.code, admin_id=admin_id)
        return PromoCodeCreateResult(promo=promo)

    async def set_active(self, db: AsyncSession, promo_id: int, is_active: bool) -> PromoCode | None:
        promo = await get_promo_code_by_id(db, promo_id)
        if promo is None:
            return None
        await set_promo_code_active(db, promo_id, is_active)
        await db.commit()
        await db.refresh(promo)
        return promo

    async def delete_code(self, db: AsyncSession, promo_id: int) -> bool:
        deleted = await delete_promo_code(db, promo_id)
        if deleted:
            await db.commit()
            logger.info('Promo code deleted', promo_id=promo_id)
        return deleted
