from __future__ import annotations

from datetime import UTC, datetime, timedelta

import structlog

from app.config import Settings, settings as default_settings
from app.external.remnawave_api import (
    RemnaWaveAPI,
    RemnaWaveUser,
    TrafficLimitStrategy,
    UserStatus,
)


logger = structlog.get_logger(__name__)


class RemnaWaveConfigurationError(Exception):
    pass


def _now_utc() -> datetime:
    return datetime.now(UTC)


def resolve_device_limit(current_limit: int | None, tariff_limit: int) -> int | None:
    """Device limit to write to the panel after a purchase.

    ``None`` means the limit is disabled for this account in the panel and must
    stay untouched; otherwise the customer gets exactly the tariff's limit.
    """
    if current_limit is None:
        return None
    return tariff_limit


def calculate_new_expire(days: int, current_expire: datetime | None, now: datetime | None = None) -> datetime:
    current = now or _now_utc()

    if days <= 0:
        if current_expire is None:
            return current + timedelta(days=1)
        shifted = current_expire + timedelta(days=days)
        if shifted < current:
            return current + timedelta(days=1)
        return shifted

    if current_expire is None or current_expire < current:
        return current + timedelta(days=days)
    return current_expire + timedelta(days=days)


def generate_username(customer_id: int, telegram_id: int) -> str:
    return f'{customer_id}_{telegram_id}'


def _pick_panel_user(users: list[RemnaWaveUser], telegram_id: int) -> RemnaWaveUser | None:
    if not users:
        return None
    marker = f'_{telegram_id}'
    for user in users:
        if marker in user.username:
            return user
    return users[0]


class RemnaWaveService:
    def __init__(self, config: Settings | None = None):
        self.config = config or default_settings
        self.configuration_error: str | None = None
        if not self.config.is_remnawave_configured():
            self.configuration_error = 'REMNAWAVE_URL and REMNAWAVE_TOKEN must be set'

    @property
    def is_configured(self) -> bool:
        return self.configuration_error is None

    def get_api_client(self) -> RemnaWaveAPI:
        if not self.is_configured:
            raise RemnaWaveConfigurationError(self.configuration_error)
        return RemnaWaveAPI(self.config.REMNAWAVE_URL, self.config.REMNAWAVE_TOKEN)

    async def _selected_squads(self, api: RemnaWaveAPI) -> list[str]:
        available = await api.get_internal_squad_uuids()
        selected = set(self.config.SQUAD_UUIDS)
        if not selected:
            return available
        return [squad for squad in available if squad in selected]

    async def get_user_by_telegram_id(self, telegram_id: int) -> RemnaWaveUser | None:
        async with self.get_api_client() as api:
            users = await api.get_users_by_telegram_id(telegram_id)
        return _pick_panel_user(users, telegram_id)

    async def create_or_update_user(
        self,
        *,
        customer_id: int,
        telegram_id: int,
        traffic_limit_bytes: int,
        days: int,
        is_trial: bool = False,
        device_limit: int | None = None,
        description: str | None = None,
    ) -> RemnaWaveUser:
        async with self.get_api_client() as api:
            existing = _pick_panel_user(await api.get_users_by_telegram_id(telegram_id), telegram_id)
            squads = await self._selected_squads(api)
            strategy = TrafficLimitStrategy.from_config(self.config.TRAFFIC_LIMIT_RESET_STRATEGY)

            if existing is None:
                payload = {
                    'username': generate_username(customer_id, telegram_id),
                    'status': UserStatus.ACTIVE.value,
                    'telegramId': telegram_id,
                    'expireAt': (_now_utc() + timedelta(days=days)).isoformat(),
                    'trafficLimitBytes': traffic_limit_bytes,
                    'trafficLimitStrategy': strategy.value,
                    'activeInternalSquads': squads,
                }
                if device_limit is not None and not is_trial:
                    payload['hwidDeviceLimit'] = device_limit
                if self.config.REMNAWAVE_TAG:
                    payload['tag'] = self.config.REMNAWAVE_TAG
                if description:
                    payload['description'] = description

                user = await api.create_user(payload)
                logger.info('Created panel user', customer_id=customer_id, days=days, is_trial=is_trial)
                return user

            payload = {
                'uuid': existing.uuid,
                'status': UserStatus.ACTIVE.value,
                'expireAt': calculate_new_expire(days, existing.expire_at).isoformat(),
                'trafficLimitBytes': traffic_limit_bytes,
                'trafficLimitStrategy': strategy.value,
                'activeInternalSquads': squads,
            }
            if device_limit is not None:
                final_limit = resolve_device_limit(existing.hwid_device_limit, device_limit)
                if final_limit is not None:
                    payload['hwidDeviceLimit'] = final_limit
                logger.debug(
                    'Resolved device limit',
                    current_limit=existing.hwid_device_limit,
                    tariff_limit=device_limit,
                    final_limit=final_limit,
                )
            if self.config.REMNAWAVE_TAG:
                payload['tag'] = self.config.REMNAWAVE_TAG
            if description:
                payload['description'] = description

            user = await api.update_user(payload)
            logger.info('Updated panel user', customer_id=customer_id, days=days)
            return user
