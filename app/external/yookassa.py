from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

import aiohttp
import structlog


logger = structlog.get_logger(__name__)

RETRYABLE_STATUSES = frozenset({429, 500, 502, 503, 504})
MAX_ATTEMPTS = 5
BASE_DELAY_SECONDS = 1.0

STATUS_PENDING = 'pending'
STATUS_WAITING_FOR_CAPTURE = 'waiting_for_capture'
STATUS_SUCCEEDED = 'succeeded'
STATUS_CANCELED = 'canceled'

REASON_PERMISSION_REVOKED = 'permission_revoked'


class YooKassaAPIError(Exception):
    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


@dataclass
class YooKassaPayment:
    id: str
    status: str
    paid: bool
    amount: str | None = None
    confirmation_url: str | None = None
    cancellation_reason: str | None = None
    payment_method_id: str | None = None
    payment_method_saved: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> YooKassaPayment:
        payment_method = data.get('payment_method') or {}
        cancellation = data.get('cancellation_details') or {}
        confirmation = data.get('confirmation') or {}
        return cls(
            id=data['id'],
            status=data.get('status') or STATUS_PENDING,
            paid=bool(data.get('paid')),
            amount=(data.get('amount') or {}).get('value'),
            confirmation_url=confirmation.get('confirmation_url'),
            cancellation_reason=cancellation.get('reason'),
            payment_method_id=payment_method.get('id'),
            payment_method_saved=bool(payment_method.get('saved')),
            metadata=data.get('metadata') or {},
        )

    @property
    def is_cancelled(self) -> bool:
        return self.status == STATUS_CANCELED

    @property
    def is_succeeded(self) -> bool:
        return self.status == STATUS_SUCCEEDED and self.paid

    @property
    def is_permission_revoked(self) -> bool:
        return self.is_cancelled and self.cancellation_reason == REASON_PERMISSION_REVOKED

    def metadata_int(self, key: str) -> int | None:
        value = self.metadata.get(key)
        if value in (None, ''):
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            return None


class YooKassaClient:
    def __init__(
        self,
        base_url: str,
        shop_id: str,
        secret_key: str,
        *,
        email: str = '',
        return_url: str = '',
        timeout: float = 10.0,
    ):
        self.base_url = base_url.rstrip('/')
        self.auth = aiohttp.BasicAuth(shop_id, secret_key)
        self.email = email
        self.return_url = return_url
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: dict | None = None,
        idempotence_key: str | None = None,
    ) -> tuple[int, dict[str, Any]]:
        headers = {'Content-Type': 'application/json'}
        if idempotence_key:
            headers['Idempotence-Key'] = idempotence_key

        async with aiohttp.ClientSession(timeout=self.timeout, auth=self.auth) as session:
            async with session.request(method, f'{self.base_url}{path}', json=json_body, headers=headers) as response:
                status_code = response.status
                try:
                    data = await response.json(content_type=None)
                except ValueError as exc:
                    # gateway error pages are HTML; the status still drives retries
                    if status_code >= 400:
                        return status_code, {}
                    raise YooKassaAPIError(
                        f'YooKassa returned a non-JSON body with status {status_code}',
                        status_code=status_code,
                    ) from exc
                return status_code, data if isinstance(data, dict) else {}

    async def _create_payment(self, body: dict[str, Any]) -> YooKassaPayment:
        try:
            status_code, data = await self._request('POST', '/payments', json_body=body, idempotence_key=str(uuid4()))
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise YooKassaAPIError(f'YooKassa request failed: {exc}') from exc

        if status_code >= 400:
            raise YooKassaAPIError(
                f'YooKassa payment creation failed: {data.get("description") or status_code}',
                status_code=status_code,
            )
        return YooKassaPayment.from_payload(data)

    def _receipt(self, amount: int, description: str) -> dict[str, Any] | None:
        if not self.email:
            return None
        return {
            'customer': {'email': self.email},
            'items': [
                {
                    'description': description[:128],
                    'quantity': '1.00',
                    'amount': {'value': f'{amount}.00', 'currency': 'RUB'},
                    'vat_code': 1,
                    'payment_subject': 'service',
                    'payment_mode': 'full_payment',
                }
            ],
        }

    async def create_invoice(
        self,
        *,
        amount: int,
        months: int,
        customer_id: int,
        purchase_id: int,
        username: str = '',
        save_payment_method: bool = False,
        tariff_name: str | None = None,
    ) -> YooKassaPayment:
        description = f'Подписка на {months} мес.'
        metadata: dict[str, Any] = {
            'customerId': customer_id,
            'purchaseId': purchase_id,
            'username': username,
        }
        if save_payment_method:
            metadata['recurring_months'] = months
            metadata['recurring_amount'] = amount
            if tariff_name:
                metadata['recurring_tariff_name'] = tariff_name

        body: dict[str, Any] = {
            'amount': {'value': f'{amount}.00', 'currency': 'RUB'},
            'capture': True,
            'confirmation': {'type': 'redirect', 'return_url': self.return_url},
            'description': description,
            'metadata': metadata,
        }
        if save_payment_method:
            body['save_payment_method'] = True
        receipt = self._receipt(amount, description)
        if receipt:
            body['receipt'] = receipt

        return await self._create_payment(body)

    async def create_recurring_payment(
        self,
        *,
        payment_method_id: str,
        amount: int,
        months: int,
        customer_id: int,
        description: str,
    ) -> YooKassaPayment:
        body: dict[str, Any] = {
            'amount': {'value': f'{amount}.00', 'currency': 'RUB'},
            'capture': True,
            'payment_method_id': payment_method_id,
            'description': description,
            'metadata': {
                'customerId': customer_id,
                'recurring_payment': True,
                'months': months,
            },
        }
        receipt = self._receipt(amount, description)
        if receipt:
            body['receipt'] = receipt

        return await self._create_payment(body)

    async def get_payment(self, payment_id: str) -> YooKassaPayment:
        delay = BASE_DELAY_SECONDS
        last_error: YooKassaAPIError | None = None

        for attempt in range(1, MAX_ATTEMPTS + 1):
            try:
                status_code, data = await self._request('GET', f'/payments/{payment_id}')
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                raise YooKassaAPIError(f'YooKassa request failed: {exc}') from exc

            if status_code == 200:
                return YooKassaPayment.from_payload(data)

            last_error = YooKassaAPIError(
                f'YooKassa get payment failed with status {status_code}',
                status_code=status_code,
            )
            if status_code not in RETRYABLE_STATUSES:
                raise last_error

            if attempt < MAX_ATTEMPTS:
                logger.warning(
                    'YooKassa rate limited or unavailable, backing off',
                    payment_id=payment_id,
                    status_code=status_code,
                    attempt=attempt,
                    delay=delay,
                )
                await asyncio.sleep(delay)
                delay *= 2

        raise last_error or YooKassaAPIError(f'YooKassa get payment {payment_id} gave up')
