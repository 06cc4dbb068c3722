from __future__ import annotations

import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.database.crud.customer import clear_promo_offer, clear_winback_offer
from app.database.models import Customer, InvoiceType, OfferKind


if TYPE_CHECKING:
    from app.services.payment_service import CheckoutResult, PaymentService


logger = structlog.get_logger(__name__)

CODE_FORMAT_RE = re.compile(r'^[A-Z0-9_-]{3,50}$')

# i18n prefix for code validation errors; snapshot kinds additionally get
# `<prefix>_offer_invalid` when the snapshot is incomplete.
ERROR_PREFIXES: dict[OfferKind, str] = {
    OfferKind.PROMO: 'promo',
    OfferKind.PROMO_TARIFF: 'promo_tariff',
    OfferKind.WINBACK: 'winback',
}

OFFER_EXPIRED_KEYS: dict[OfferKind, str] = {
    OfferKind.PROMO_TARIFF: 'promo_tariff_offer_expired',
    OfferKind.WINBACK: 'winback_expired',
}

SNAPSHOT_FIELDS: dict[OfferKind, dict[str, str]] = {
    OfferKind.PROMO_TARIFF: {
        'price': 'promo_offer_price',
        'devices': 'promo_offer_devices',
        'months': 'promo_offer_months',
        'expires_at': 'promo_offer_expires_at',
        'code_id': 'promo_offer_code_id',
    },
    OfferKind.WINBACK: {
        'price': 'winback_offer_price',
        'devices': 'winback_offer_devices',
        'months': 'winback_offer_months',
        'expires_at': 'winback_offer_expires_at',
    },
}


def _now_utc() -> datetime:
    return datetime.now(UTC)


def _ensure_aware(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def normalize_code(raw: str | None) -> str:
    return (raw or '').strip().upper()


def is_valid_code_format(code: str) -> bool:
    return bool(CODE_FORMAT_RE.match(code))


@dataclass(frozen=True)
class Offer:
    kind: OfferKind
    price: int | None
    devices: int | None
    months: int | None
    expires_at: datetime | None
    code_id: int | None = None

    @property
    def error_prefix(self) -> str:
        return ERROR_PREFIXES[self.kind]


@dataclass(frozen=True)
class OfferPurchaseParams:
    price: int
    devices: int
    months: int
    days: int


def is_offer_valid(offer: Offer | None, now: datetime | None = None) -> bool:
    if offer is None or offer.expires_at is None:
        return False
    return _ensure_aware(offer.expires_at) > (now or _now_utc())


def is_winback_offer_valid(expires_at: datetime | None, now: datetime | None = None) -> bool:
    return is_offer_valid(
        Offer(kind=OfferKind.WINBACK, price=None, devices=None, months=None, expires_at=expires_at),
        now,
    )


def offer_from_customer(customer: Customer | Any, kind: OfferKind) -> Offer | None:
    fields = SNAPSHOT_FIELDS[kind]
    values = {name: getattr(customer, column, None) for name, column in fields.items()}
    if all(value is None for value in values.values()):
        return None
    return Offer(
        kind=kind,
        price=values['price'],
        devices=values['devices'],
        months=values['months'],
        expires_at=values['expires_at'],
        code_id=values.get('code_id'),
    )


def extract_offer_purchase_params(offer: Offer | None, days_in_month: int) -> OfferPurchaseParams | None:
    """Purchase terms frozen in the snapshot; ``None`` if the snapshot is incomplete."""
    if offer is None or offer.price is None or offer.devices is None or offer.months is None:
        return None
    return OfferPurchaseParams(
        price=offer.price,
        devices=offer.devices,
        months=offer.months,
        days=offer.months * days_in_month,
    )


async def clear_offer_snapshot(db: AsyncSession, customer: Customer, kind: OfferKind) -> None:
    if kind == OfferKind.PROMO_TARIFF:
        await clear_promo_offer(db, customer)
    elif kind == OfferKind.WINBACK:
        await clear_winback_offer(db, customer)


@dataclass
class CodeStrategy:
    """Lookup and usage checks for one kind of activation code."""

    kind: OfferKind
    get_by_code: Callable[[AsyncSession, str], Awaitable[Any]]
    is_used_by_customer: Callable[[AsyncSession, int, int], Awaitable[bool]]

    @property
    def error_prefix(self) -> str:
        return ERROR_PREFIXES[self.kind]


@dataclass
class CodeValidationResult:
    code: Any = None
    error_key: str | None = None

    @property
    def ok(self) -> bool:
        return self.error_key is None


async def validate_code_activation(
    db: AsyncSession,
    strategy: CodeStrategy,
    raw_code: str | None,
    customer_id: int,
    now: datetime | None = None,
) -> CodeValidationResult:
    prefix = strategy.error_prefix
    current = now or _now_utc()

    code = normalize_code(raw_code)
    if not is_valid_code_format(code):
        return CodeValidationResult(error_key=f'{prefix}_invalid_format')

    row = await strategy.get_by_code(db, code)
    if row is None:
        return CodeValidationResult(error_key=f'{prefix}_not_found')

    if not row.is_active:
        return CodeValidationResult(code=row, error_key=f'{prefix}_inactive')

    if row.valid_until is not None and _ensure_aware(row.valid_until) < current:
        return CodeValidationResult(code=row, error_key=f'{prefix}_expired')

    if row.current_activations >= row.max_activations:
        return CodeValidationResult(code=row, error_key=f'{prefix}_limit_reached')

    if await strategy.is_used_by_customer(db, row.id, customer_id):
        return CodeValidationResult(code=row, error_key=f'{prefix}_already_used')

    return CodeValidationResult(code=row)


@dataclass
class OfferPurchaseResult:
    success: bool
    error_key: str | None = None
    offer: Offer | None = None
    checkout: CheckoutResult | None = None


class OfferService:
    """Turns an outstanding offer snapshot into a purchase."""

    def __init__(self, payment_service: PaymentService, *, days_in_month: int):
        self.payment_service = payment_service
        self.days_in_month = days_in_month

    async def start_offer_purchase(
        self,
        db: AsyncSession,
        customer: Customer,
        kind: OfferKind,
        invoice_type: InvoiceType,
        *,
        username: str | None = None,
        save_payment_method: bool = False,
        now: datetime | None = None,
    ) -> OfferPurchaseResult:
        if kind not in SNAPSHOT_FIELDS:
            raise ValueError(f'{kind} has no offer snapshot')

        prefix = ERROR_PREFIXES[kind]
        offer = offer_from_customer(customer, kind)
        if offer is None:
            return OfferPurchaseResult(success=False, error_key=f'{prefix}_offer_invalid')

        params = extract_offer_purchase_params(offer, self.days_in_month)
        if params is None:
            logger.error('Offer snapshot is incomplete', customer_id=customer.id, kind=kind.value)
            return OfferPurchaseResult(success=False, error_key=f'{prefix}_offer_invalid', offer=offer)

        if not is_offer_valid(offer, now):
            return OfferPurchaseResult(success=False, error_key=OFFER_EXPIRED_KEYS[kind], offer=offer)

        checkout = await self.payment_service.create_purchase(
            db,
            customer,
            amount=params.price,
            months=params.months,
            invoice_type=invoice_type,
            device_limit=params.devices,
            offer_kind=kind,
            username=username,
            save_payment_method=save_payment_method,
        )
        logger.info(
            'Created purchase from offer snapshot',
            customer_id=customer.id,
            kind=kind.value,
            purchase_id=checkout.purchase.id,
            price=params.price,
            devices=params.devices,
            months=params.months,
        )
        return OfferPurchaseResult(success=True, offer=offer, checkout=checkout)
