from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

import aiohttp
import structlog


logger = structlog.get_logger(__name__)


class UserStatus(Enum):
    ACTIVE = 'ACTIVE'
    DISABLED = 'DISABLED'
    LIMITED = 'LIMITED'
    EXPIRED = 'EXPIRED'


class TrafficLimitStrategy(Enum):
    NO_RESET = 'NO_RESET'
    DAY = 'DAY'
    WEEK = 'WEEK'
    MONTH = 'MONTH'

    @classmethod
    def from_config(cls, value: str | None) -> TrafficLimitStrategy:
        try:
            return cls((value or '').upper())
        except ValueError:
            return cls.MONTH


class RemnaWaveAPIError(Exception):
    def __init__(self, message: str, status_code: int | None = None, response_data: dict | None = None):
        self.message = message
        self.status_code = status_code
        self.response_data = response_data
        super().__init__(message)


def _parse_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


@dataclass
class RemnaWaveUser:
    uuid: str
    username: str
    status: str
    expire_at: datetime
    telegram_id: int | None = None
    first_connected_at: datetime | None = None
    hwid_device_limit: int | None = None
    traffic_limit_bytes: int = 0
    subscription_url: str | None = None
    description: str | None = None

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> RemnaWaveUser:
        telegram_id = data.get('telegramId')
        return cls(
            uuid=data['uuid'],
            username=data.get('username') or '',
            status=data.get('status') or UserStatus.ACTIVE.value,
            expire_at=_parse_datetime(data.get('expireAt')) or datetime.now(UTC),
            telegram_id=int(telegram_id) if telegram_id not in (None, '') else None,
            first_connected_at=_parse_datetime(data.get('firstConnectedAt')),
            hwid_device_limit=data.get('hwidDeviceLimit'),
            traffic_limit_bytes=data.get('trafficLimitBytes') or 0,
            subscription_url=data.get('subscriptionUrl'),
            description=data.get('description'),
        )


class RemnaWaveAPI:
    """Thin async client for the Remnawave panel REST API."""

    def __init__(self, base_url: str, token: str, *, timeout: float = 10.0):
        self.base_url = base_url.rstrip('/')
        self.token = token
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.session: aiohttp.ClientSession | None = None

    async def __aenter__(self) -> RemnaWaveAPI:
        self.session = aiohttp.ClientSession(
            timeout=self.timeout,
            headers={
                'Authorization': f'Bearer {self.token}',
                'Content-Type': 'application/json',
                'Accept': 'application/json',
            },
        )
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self.session is not None:
            await self.session.close()
            self.session = None

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        data: dict | None = None,
        params: dict | None = None,
    ) -> dict[str, Any] | None:
        if self.session is None:
            raise RemnaWaveAPIError('Session is not initialized, use "async with"')

        url = f'{self.base_url}{endpoint}'
        try:
            async with self.session.request(method, url, json=data, params=params) as response:
                if response.status == 404:
                    return None
                payload = await response.json(content_type=None)
                if response.status >= 400:
                    message = (payload or {}).get('message') if isinstance(payload, dict) else None
                    raise RemnaWaveAPIError(
                        f'Remnawave API error {response.status}: {message or "unknown error"}',
                        status_code=response.status,
                        response_data=payload if isinstance(payload, dict) else None,
                    )
                return payload
        except asyncio.TimeoutError as exc:
            raise RemnaWaveAPIError(f'Remnawave request timed out: {method} {endpoint}') from exc
        except (aiohttp.ClientError, ValueError) as exc:
            # ValueError covers non-JSON bodies from proxies in front of the panel
            raise RemnaWaveAPIError(f'Remnawave request failed: {exc}') from exc

    async def get_users_by_telegram_id(self, telegram_id: int) -> list[RemnaWaveUser]:
        payload = await self._make_request('GET', f'/api/users/by-telegram-id/{telegram_id}')
        if not payload:
            return []
        return [RemnaWaveUser.from_payload(item) for item in payload.get('response') or []]

    async def get_user_by_uuid(self, user_uuid: str) -> RemnaWaveUser | None:
        payload = await self._make_request('GET', f'/api/users/{user_uuid}')
        if not payload or not payload.get('response'):
            return None
        return RemnaWaveUser.from_payload(payload['response'])

    async def get_internal_squad_uuids(self) -> list[str]:
        payload = await self._make_request('GET', '/api/internal-squads')
        if not payload:
            return []
        squads = (payload.get('response') or {}).get('internalSquads') or []
        return [squad['uuid'] for squad in squads]

    async def create_user(self, data: dict[str, Any]) -> RemnaWaveUser:
        payload = await self._make_request('POST', '/api/users', data=data)
        if not payload:
            raise RemnaWaveAPIError('Empty response on user creation')
        return RemnaWaveUser.from_payload(payload['response'])

    async def update_user(self, data: dict[str, Any]) -> RemnaWaveUser:
        payload = await self._make_request('PATCH', '/api/users', data=data)
        if not payload:
            raise RemnaWaveAPIError(f'User {data.get("uuid")} not found on update', status_code=404)
        return RemnaWaveUser.from_payload(payload['response'])
