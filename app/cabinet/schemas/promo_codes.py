from datetime import datetime

from pydantic import BaseModel, Field


class PromoCodeCreateRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=50)
    bonus_days: int
    max_activations: int
    valid_until: datetime | None = None
    admin_id: int | None = None


class PromoCodeResponse(BaseModel):
    id: int
    code: str
    bonus_days: int
    max_activations: int
    current_activations: int
    activations_left: int
    is_active: bool
    valid_until: datetime | None = None
    created_at: datetime | None = None


class PromoCodeListResponse(BaseModel):
    items: list[PromoCodeResponse] = Field(default_factory=list)
    total: int = 0


class PromoTariffCodeCreateRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=50)
    price: int
    devices: int
    months: int
    max_activations: int
    valid_hours: int = 24
    valid_until: datetime | None = None
    admin_id: int | None = None


class PromoTariffCodeResponse(BaseModel):
    id: int
    code: str
    price: int
    devices: int
    months: int
    max_activations: int
    current_activations: int
    activations_left: int
    valid_hours: int
    is_active: bool
    valid_until: datetime | None = None
    created_at: datetime | None = None


class PromoTariffCodeListResponse(BaseModel):
    items: list[PromoTariffCodeResponse] = Field(default_factory=list)
    total: int = 0


class PromoActiveUpdateRequest(BaseModel):
    is_active: bool


class ActivationResponse(BaseModel):
    customer_id: int
    activated_at: datetime


class ActivationListResponse(BaseModel):
    items: list[ActivationResponse] = Field(default_factory=list)
    total: int = 0
