from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator


class RemnawaveWebhookUser(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra='ignore')

    uuid: str | None = None
    username: str | None = None
    status: str | None = None
    telegram_id: int | None = Field(default=None, alias='telegramId')
    first_connected_at: datetime | None = Field(default=None, alias='firstConnectedAt')
    expire_at: datetime | None = Field(default=None, alias='expireAt')

    @field_validator('telegram_id', mode='before')
    @classmethod
    def _empty_telegram_id(cls, value):
        if value in ('', None):
            return None
        return value


class RemnawaveWebhookPayload(BaseModel):
    model_config = ConfigDict(extra='ignore')

    event: str
    data: RemnawaveWebhookUser = Field(default_factory=RemnawaveWebhookUser)
    timestamp: str | None = None


class TributeSubscriptionData(BaseModel):
    model_config = ConfigDict(extra='ignore')

    subscription_id: int | None = None
    subscription_name: str | None = None
    period_id: int | None = None
    period: str = 'monthly'
    price: int | None = None
    amount: int = 0
    currency: str | None = None
    user_id: int | None = None
    telegram_user_id: int
    channel_id: int | None = None
    channel_name: str | None = None
    expires_at: datetime | None = None


class TributeWebhookPayload(BaseModel):
    model_config = ConfigDict(extra='ignore')

    name: str = ''
    created_at: datetime | None = None
    sent_at: datetime | None = None
    payload: TributeSubscriptionData | None = None


class WebhookAckResponse(BaseModel):
    status: str = 'ok'
