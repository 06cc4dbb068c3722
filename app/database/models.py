from datetime import UTC, datetime
from enum import Enum

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
)
from sqlalchemy.ext.declarative import declarative_base
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func


def _aware(dt: datetime | None) -> datetime | None:
    """Ensure datetime is timezone-aware (handles pre-TIMESTAMPTZ databases)."""
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt


class AwareDateTime(TypeDecorator):
    """DateTime that auto-converts naive values to UTC-aware on load from DB."""

    impl = DateTime
    cache_ok = True

    def __init__(self):
        super().__init__(timezone=True)

    def process_result_value(self, value, dialect):
        if value is not None and isinstance(value, datetime) and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


Base = declarative_base()


class PurchaseStatus(Enum):
    NEW = 'new'
    PENDING = 'pending'
    PAID = 'paid'
    CANCEL = 'cancel'


class InvoiceType(Enum):
    YOOKASA = 'yookasa'
    CRYPTO = 'crypto'
    TELEGRAM = 'telegram'
    TRIBUTE = 'tribute'


class OfferKind(Enum):
    PROMO = 'promo'
    PROMO_TARIFF = 'promo_tariff'
    WINBACK = 'winback'


class BroadcastStatus(Enum):
    PENDING = 'pending'
    IN_PROGRESS = 'in_progress'
    COMPLETED = 'completed'
    FAILED = 'failed'


# new -> pending -> paid | cancel; a purchase may also be settled straight from new
# (Stars, Tribute and recurring charges never have a pending phase).
_PURCHASE_TRANSITIONS: dict[str, frozenset[str]] = {
    PurchaseStatus.NEW.value: frozenset(
        {PurchaseStatus.PENDING.value, PurchaseStatus.PAID.value, PurchaseStatus.CANCEL.value}
    ),
    PurchaseStatus.PENDING.value: frozenset({PurchaseStatus.PAID.value, PurchaseStatus.CANCEL.value}),
    PurchaseStatus.PAID.value: frozenset(),
    PurchaseStatus.CANCEL.value: frozenset(),
}


class Customer(Base):
    __tablename__ = 'customer'

    id = Column(BigInteger, primary_key=True, index=True)
    telegram_id = Column(BigInteger, unique=True, nullable=False, index=True)
    expire_at = Column(AwareDateTime(), nullable=True)
    created_at = Column(AwareDateTime(), server_default=func.now(), nullable=False)
    subscription_link = Column(Text, nullable=True)
    language = Column(String(10), nullable=False, default='ru')

    trial_inactive_notified_at = Column(AwareDateTime(), nullable=True)

    winback_offer_sent_at = Column(AwareDateTime(), nullable=True)
    winback_offer_expires_at = Column(AwareDateTime(), nullable=True)
    winback_offer_price = Column(Integer, nullable=True)
    winback_offer_devices = Column(Integer, nullable=True)
    winback_offer_months = Column(Integer, nullable=True)

    recurring_enabled = Column(Boolean, nullable=False, default=False)
    payment_method_id = Column(String(255), nullable=True)
    recurring_tariff_name = Column(String(100), nullable=True)
    recurring_months = Column(Integer, nullable=True)
    recurring_amount = Column(Integer, nullable=True)
    recurring_notified_at = Column(AwareDateTime(), nullable=True)

    promo_offer_price = Column(Integer, nullable=True)
    promo_offer_devices = Column(Integer, nullable=True)
    promo_offer_months = Column(Integer, nullable=True)
    promo_offer_expires_at = Column(AwareDateTime(), nullable=True)
    promo_offer_code_id = Column(BigInteger, ForeignKey('promo_tariff_code.id', ondelete='SET NULL'), nullable=True)

    purchases = relationship('Purchase', back_populates='customer')

    @property
    def has_recurring_method(self) -> bool:
        return bool(self.recurring_enabled and self.payment_method_id)

    def __repr__(self):
        return f'<Customer(id={self.id}, telegram_id={self.telegram_id}, expire_at={self.expire_at})>'


class Purchase(Base):
    __tablename__ = 'purchase'
    __table_args__ = (Index('ix_purchase_invoice_type_status', 'invoice_type', 'status'),)

    id = Column(BigInteger, primary_key=True, index=True)
    amount = Column(Float, nullable=False)
    currency = Column(String(10), nullable=False, default='RUB')
    customer_id = Column(BigInteger, ForeignKey('customer.id', ondelete='CASCADE'), nullable=False, index=True)
    created_at = Column(AwareDateTime(), server_default=func.now(), nullable=False)
    month = Column(Integer, nullable=False)
    paid_at = Column(AwareDateTime(), nullable=True)
    expire_at = Column(AwareDateTime(), nullable=True)
    status = Column(String(20), nullable=False, default=PurchaseStatus.NEW.value)
    invoice_type = Column(String(20), nullable=False)

    crypto_invoice_id = Column(BigInteger, nullable=True)
    crypto_invoice_url = Column(Text, nullable=True)
    yookasa_id = Column(String(64), nullable=True, index=True)
    yookasa_url = Column(Text, nullable=True)

    tariff_name = Column(String(100), nullable=True)
    device_limit = Column(Integer, nullable=True)
    offer_kind = Column(String(20), nullable=True)

    customer = relationship('Customer', back_populates='purchases')

    @property
    def is_paid(self) -> bool:
        return self.status == PurchaseStatus.PAID.value

    @property
    def is_terminal(self) -> bool:
        return self.status in (PurchaseStatus.PAID.value, PurchaseStatus.CANCEL.value)

    def can_transition_to(self, target: PurchaseStatus) -> bool:
        return target.value in _PURCHASE_TRANSITIONS.get(self.status, frozenset())

    def __repr__(self):
        return (
            f'<Purchase(id={self.id}, customer_id={self.customer_id}, amount={self.amount} {self.currency}, '
            f'status={self.status}, invoice_type={self.invoice_type})>'
        )


class PromoCode(Base):
    __tablename__ = 'promo_code'

    id = Column(BigInteger, primary_key=True, index=True)
    code = Column(String(50), unique=True, nullable=False, index=True)
    bonus_days = Column(Integer, nullable=False)
    max_activations = Column(Integer, nullable=False)
    current_activations = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    created_by_admin_id = Column(BigInteger, nullable=True)
    created_at = Column(AwareDateTime(), server_default=func.now(), nullable=False)
    valid_until = Column(AwareDateTime(), nullable=True)

    activations = relationship('PromoCodeActivation', back_populates='promo_code', cascade='all, delete-orphan')

    @property
    def activations_left(self) -> int:
        return max(0, self.max_activations - self.current_activations)


class PromoCodeActivation(Base):
    __tablename__ = 'promo_code_activation'
    __table_args__ = (UniqueConstraint('promo_code_id', 'customer_id', name='uq_promo_code_activation_code_customer'),)

    id = Column(BigInteger, primary_key=True, index=True)
    promo_code_id = Column(BigInteger, ForeignKey('promo_code.id', ondelete='CASCADE'), nullable=False, index=True)
    customer_id = Column(BigInteger, ForeignKey('customer.id', ondelete='CASCADE'), nullable=False, index=True)
    activated_at = Column(AwareDateTime(), server_default=func.now(), nullable=False)

    promo_code = relationship('PromoCode', back_populates='activations')


class PromoTariffCode(Base):
    __tablename__ = 'promo_tariff_code'

    id = Column(BigInteger, primary_key=True, index=True)
    code = Column(String(50), unique=True, nullable=False, index=True)
    price = Column(Integer, nullable=False)
    devices = Column(Integer, nullable=False)
    months = Column(Integer, nullable=False)
    max_activations = Column(Integer, nullable=False)
    current_activations = Column(Integer, nullable=False, default=0)
    valid_hours = Column(Integer, nullable=False, default=24)
    is_active = Column(Boolean, nullable=False, default=True)
    created_by_admin_id = Column(BigInteger, nullable=True)
    created_at = Column(AwareDateTime(), server_default=func.now(), nullable=False)
    valid_until = Column(AwareDateTime(), nullable=True)

    activations = relationship('PromoTariffActivation', back_populates='promo_tariff', cascade='all, delete-orphan')

    @property
    def activations_left(self) -> int:
        return max(0, self.max_activations - self.current_activations)


class PromoTariffActivation(Base):
    __tablename__ = 'promo_tariff_activation'
    __table_args__ = (
        UniqueConstraint('promo_tariff_id', 'customer_id', name='uq_promo_tariff_activation_code_customer'),
    )

    id = Column(BigInteger, primary_key=True, index=True)
    promo_tariff_id = Column(
        BigInteger, ForeignKey('promo_tariff_code.id', ondelete='CASCADE'), nullable=False, index=True
    )
    customer_id = Column(BigInteger, ForeignKey('customer.id', ondelete='CASCADE'), nullable=False, index=True)
    activated_at = Column(AwareDateTime(), server_default=func.now(), nullable=False)

    promo_tariff = relationship('PromoTariffCode', back_populates='activations')


class BroadcastHistory(Base):
    __tablename__ = 'broadcast_history'

    id = Column(BigInteger, primary_key=True, index=True)
    target_type = Column(String(50), nullable=False)
    message_text = Column(Text, nullable=False)
    total_count = Column(Integer, nullable=False, default=0)
    sent_count = Column(Integer, nullable=False, default=0)
    failed_count = Column(Integer, nullable=False, default=0)
    status = Column(String(20), nullable=False, default=BroadcastStatus.PENDING.value)
    created_at = Column(AwareDateTime(), server_default=func.now(), nullable=False)
    completed_at = Column(AwareDateTime(), nullable=True)

    @property
    def is_finished(self) -> bool:
        return self.status in (BroadcastStatus.COMPLETED.value, BroadcastStatus.FAILED.value)
