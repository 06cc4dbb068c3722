from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any
from urllib.parse import parse_qs

import aiohttp
import structlog


logger = structlog.get_logger(__name__)

INVOICE_STATUS_ACTIVE = 'active'
INVOICE_STATUS_PAID = 'paid'
INVOICE_STATUS_EXPIRED = 'expired'


class CryptoPayAPIError(Exception):
    pass


@dataclass
class CryptoInvoice:
    invoice_id: int
    status: str
    payload: str | None = None
    bot_invoice_url: str | None = None
    amount: str | None = None

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> CryptoInvoice:
        return cls(
            invoice_id=int(data['invoice_id']),
            status=data.get('status') or INVOICE_STATUS_ACTIVE,
            payload=data.get('payload'),
            bot_invoice_url=data.get('bot_invoice_url') or data.get('pay_url'),
            amount=data.get('amount'),
        )

    @property
    def is_paid(self) -> bool:
        return self.status == INVOICE_STATUS_PAID

    @property
    def is_expired(self) -> bool:
        return self.status == INVOICE_STATUS_EXPIRED


def build_invoice_payload(purchase_id: int, username: str | None) -> str:
    return f'purchaseId={purchase_id}&username={username or ""}'


def parse_invoice_payload(payload: str | None) -> tuple[int | None, str | None]:
    if not payload:
        return None, None
    values = parse_qs(payload, keep_blank_values=True)
    raw_id = (values.get('purchaseId') or [''])[0]
    username = (values.get('username') or [''])[0] or None
    try:
        return int(raw_id), username
    except ValueError:
        return None, username


class CryptoPayClient:
    def __init__(self, base_url: str, token: str, *, timeout: float = 10.0):
        self.base_url = base_url.rstrip('/')
        self.token = token
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    async def _call(self, method: str, params: dict[str, Any]) -> Any:
        headers = {'Crypto-Pay-API-Token': self.token}
        try:
            async with aiohttp.ClientSession(timeout=self.timeout, headers=headers) as session:
                async with session.get(f'{self.base_url}/api/{method}', params=params) as response:
                    status_code = response.status
                    try:
                        data = await response.json(content_type=None)
                    except ValueError as exc:
                        raise CryptoPayAPIError(
                            f'Crypto Pay {method} returned a non-JSON body with status {status_code}'
                        ) from exc
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise CryptoPayAPIError(f'Crypto Pay request failed: {exc}') from exc

        if not isinstance(data, dict) or not data.get('ok'):
            error = data.get('error') if isinstance(data, dict) else data
            raise CryptoPayAPIError(f'Crypto Pay {method} failed: {error}')
        return data.get('result')

    async def create_invoice(
        self,
        *,
        amount: int,
        purchase_id: int,
        username: str | None,
        description: str,
        currency_type: str = 'fiat',
        fiat: str = 'RUB',
        expires_in: int = 3600,
    ) -> CryptoInvoice:
        result = await self._call(
            'createInvoice',
            {
                'currency_type': currency_type,
                'fiat': fiat,
                'amount': str(amount),
                'description': description,
                'payload': build_invoice_payload(purchase_id, username),
                'expires_in': expires_in,
            },
        )
        return CryptoInvoice.from_payload(result)

    async def get_invoices(self, invoice_ids: list[int]) -> list[CryptoInvoice]:
        if not invoice_ids:
            return []
        result = await self._call('getInvoices', {'invoice_ids': ','.join(str(item) for item in invoice_ids)})
        items = (result or {}).get('items') or []
        return [CryptoInvoice.from_payload(item) for item in items]
