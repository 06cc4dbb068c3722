from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings, settings as default_settings
from app.database.crud.customer import set_promo_offer
from app.database.crud.promo_tariff_code import (
    create_promo_tariff_code,
    delete_promo_tariff_code,
    get_promo_tariff_code_by_code,
    get_promo_tariff_code_by_id,
    increment_promo_tariff_activations,
    is_promo_tariff_code_used_by_customer,
    record_promo_tariff_activation,
    set_promo_tariff_code_active,
)
from app.database.models import Customer, OfferKind, PromoTariffCode
from app.services.offer_service import (
    CodeStrategy,
    Offer,
    is_valid_code_format,
    normalize_code,
    validate_code_activation,
)


logger = structlog.get_logger(__name__)

MAX_PRICE = 1_000_000
MAX_DEVICES = 100
ALLOWED_MONTHS = (1, 3, 6, 12)
MAX_VALID_HOURS = 24 * 365


@dataclass
class PromoTariffApplyResult:
    success: bool
    error_key: str | None = None
    offer: Offer | None = None


@dataclass
class PromoTariffCreateResult:
    promo: PromoTariffCode | None = None
    error_key: str | None = None


def validate_promo_tariff_code(
    code: str | None,
    price: int,
    devices: int,
    months: int,
    max_activations: int,
    valid_hours: int,
) -> str | None:
    normalized = normalize_code(code)
    if not normalized:
        return 'promo_tariff_code_empty'
    if not is_valid_code_format(normalized):
        return 'promo_tariff_invalid_format'
    if price <= 0 or price > MAX_PRICE:
        return 'promo_tariff_invalid_price'
    if devices <= 0 or devices > MAX_DEVICES:
        return 'promo_tariff_invalid_devices'
    if months not in ALLOWED_MONTHS:
        return 'promo_tariff_invalid_months'
    if max_activations <= 0:
        return 'promo_tariff_invalid_max_activations'
    if valid_hours <= 0 or valid_hours > MAX_VALID_HOURS:
        return 'promo_tariff_invalid_valid_hours'
    return None


class PromoTariffService:
    """Tariff promo codes: activation writes a time-boxed offer, payment happens later."""

    def __init__(self, config: Settings | None = None):
        self.config = config or default_settings

    @staticmethod
    def _strategy() -> CodeStrategy:
        return CodeStrategy(
            kind=OfferKind.PROMO_TARIFF,
            get_by_code=get_promo_tariff_code_by_code,
            is_used_by_customer=is_promo_tariff_code_used_by_customer,
        )

    async def apply_promo_tariff_code(
        self,
        db: AsyncSession,
        customer: Customer,
        raw_code: str | None,
        *,
        now: datetime | None = None,
    ) -> PromoTariffApplyResult:
        if not self.config.PROMO_TARIFF_CODES_ENABLED:
            return PromoTariffApplyResult(success=False, error_key='promo_tariff_disabled')

        current = now or datetime.now(UTC)
        try:
            validation = await validate_code_activation(db, self._strategy(), raw_code, customer.id, current)
        except Exception as exc:
            logger.error('Failed to validate promo tariff code', customer_id=customer.id, exc=exc)
            return PromoTariffApplyResult(success=False, error_key='promo_tariff_error')

        if not validation.ok:
            logger.info('Promo tariff code rejected', customer_id=customer.id, error_key=validation.error_key)
            return PromoTariffApplyResult(success=False, error_key=validation.error_key)

        promo = validation.code
        offer = Offer(
            kind=OfferKind.PROMO_TARIFF,
            price=promo.price,
            devices=promo.devices,
            months=promo.months,
            expires_at=current + timedelta(hours=promo.valid_hours),
            code_id=promo.id,
        )

        try:
            await set_promo_offer(
                db,
                customer,
                price=offer.price,
                devices=offer.devices,
                months=offer.months,
                expires_at=offer.expires_at,
                code_id=promo.id,
            )
            await record_promo_tariff_activation(db, promo.id, customer.id)
            await increment_promo_tariff_activations(db, promo.id)
            await db.commit()
        except IntegrityError:
            # a concurrent activation of the same code by this customer won
            await db.rollback()
            return PromoTariffApplyResult(success=False, error_key='promo_tariff_already_used')
        except Exception as exc:
            await db.rollback()
            logger.error(
                'Failed to store promo tariff offer',
                customer_id=customer.id,
                promo_id=promo.id,
                exc=exc,
            )
            return PromoTariffApplyResult(success=False, error_key='promo_tariff_apply_error')

        logger.info(
            'Promo tariff offer issued',
            customer_id=customer.id,
            promo_id=promo.id,
            price=offer.price,
            devices=offer.devices,
            months=offer.months,
            expires_at=offer.expires_at,
        )
        return PromoTariffApplyResult(success=True, offer=offer)

    async def create_code(
        self,
        db: AsyncSession,
        *,
        code: str,
        price: int,
        devices: int,
        months: int,
        max_activations: int,
        valid_hours: int,
        admin_id: int | None = None,
        valid_until: datetime | None = None,
    ) -> PromoTariffCreateResult:
        error_key = validate_promo_tariff_code(code, price, devices, months, max_activations, valid_hours)
        if error_key:
            return PromoTariffCreateResult(error_key=error_key)

        normalized = normalize_code(code)
        if await get_promo_tariff_code_by_code(db, normalized) is not None:
            return PromoTariffCreateResult(error_key='promo_tariff_code_exists')

        promo = await create_promo_tariff_code(
            db,
            code=normalized,
            price=price,
            devices=devices,
            months=months,
            max_activations=max_activations,
            valid_hours=valid_hours,
            admin_id=admin_id,
            valid_until=valid_until,
        )
        await db.commit()
        await db.refresh(promo)
        logger.info('Promo tariff code created', promo_id=promo.id, code=promo.code, admin_id=admin_id)
        return PromoTariffCreateResult(promo=promo)

    async def set_active(self, db: AsyncSession, promo_id: int, is_active: bool) -> PromoTariffCode | None:
        promo = await get_promo_tariff_code_by_id(db, promo_id)
        if promo is None:
            return None
        await set_promo_tariff_code_active(db, promo_id, is_active)
        await db.commit()
        await db.refresh(promo)
        return promo

    async def delete_code(self, db: AsyncSession, promo_id: int) -> bool:
        deleted = await delete_promo_tariff_code(db, promo_id)
        if deleted:
            await db.commit()
            logger.info('Promo tariff code deleted', promo_id=promo_id)
        return deleted
