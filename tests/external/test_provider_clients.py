import asyncio
import json

import pytest

from app.external import cryptopay, yookassa
from app.external.cryptopay import CryptoPayAPIError, CryptoPayClient
from app.external.remnawave_api import RemnaWaveAPI, RemnaWaveAPIError
from app.external.yookassa import YooKassaAPIError, YooKassaClient


class FakeResponse:
    def __init__(self, status, body=None, *, error=None):
        self.status = status
        self.body = body
        self.error = error

    async def __aenter__(self):
        if self.error is not None:
            raise self.error
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return None

    async def json(self, content_type='application/json'):
        if isinstance(self.body, str):
            return json.loads(self.body)
        return self.body


class FakeSession:
    """Replays queued responses in request order."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    def __call__(self, *args, **kwargs):
        return self

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return None

    def request(self, method, url, **kwargs):
        self.calls.append((method, url))
        return self.responses.pop(0)

    def get(self, url, **kwargs):
        return self.request('GET', url, **kwargs)


GATEWAY_PAGE = '<html><body><h1>502 Bad Gateway</h1></body></html>'
PAYMENT = {'id': 'p2', 'status': 'succeeded', 'paid': True, 'metadata': {'purchaseId': 2}}


def _panel(responses):
    api = RemnaWaveAPI('https://panel.example', 'token')
    api.session = FakeSession(responses)
    return api


@pytest.mark.parametrize(
    'response',
    [
        FakeResponse(200, error=asyncio.TimeoutError()),
        FakeResponse(502, GATEWAY_PAGE),
        FakeResponse(200, 'not json'),
    ],
)
async def test_panel_transport_failures_raise_api_error(response):
    api = _panel([response])

    with pytest.raises(RemnaWaveAPIError):
        await api.get_users_by_telegram_id(100)


async def test_panel_error_status_carries_message():
    api = _panel([FakeResponse(400, {'message': 'Validation failed'})])

    with pytest.raises(RemnaWaveAPIError) as exc_info:
        await api.get_users_by_telegram_id(100)

    assert exc_info.value.status_code == 400
    assert 'Validation failed' in str(exc_info.value)


async def test_panel_not_found_is_empty():
    api = _panel([FakeResponse(404, GATEWAY_PAGE)])

    assert await api.get_users_by_telegram_id(100) == []


async def test_yookassa_gateway_page_is_retried(monkeypatch):
    session = FakeSession([FakeResponse(502, GATEWAY_PAGE), FakeResponse(503, ''), FakeResponse(200, PAYMENT)])
    monkeypatch.setattr(yookassa.aiohttp, 'ClientSession', session)
    monkeypatch.setattr(yookassa, 'BASE_DELAY_SECONDS', 0)
    client = YooKassaClient('https://api.yookassa.example/v3', 'shop', 'secret')

    payment = await client.get_payment('p2')

    assert payment.id == 'p2'
    assert payment.is_succeeded
    assert len(session.calls) == 3


async def test_yookassa_gives_up_after_max_attempts(monkeypatch):
    session = FakeSession([FakeResponse(502, GATEWAY_PAGE) for _ in range(yookassa.MAX_ATTEMPTS)])
    monkeypatch.setattr(yookassa.aiohttp, 'ClientSession', session)
    monkeypatch.setattr(yookassa, 'BASE_DELAY_SECONDS', 0)
    client = YooKassaClient('https://api.yookassa.example/v3', 'shop', 'secret')

    with pytest.raises(YooKassaAPIError) as exc_info:
        await client.get_payment('p1')

    assert exc_info.value.status_code == 502
    assert len(session.calls) == yookassa.MAX_ATTEMPTS


async def test_yookassa_non_json_success_body_is_an_api_error(monkeypatch):
    monkeypatch.setattr(yookassa.aiohttp, 'ClientSession', FakeSession([FakeResponse(200, GATEWAY_PAGE)]))
    client = YooKassaClient('https://api.yookassa.example/v3', 'shop', 'secret')

    with pytest.raises(YooKassaAPIError) as exc_info:
        await client.get_payment('p1')

    assert exc_info.value.status_code == 200


async def test_cryptopay_gateway_page_is_an_api_error(monkeypatch):
    monkeypatch.setattr(cryptopay.aiohttp, 'ClientSession', FakeSession([FakeResponse(502, GATEWAY_PAGE)]))
    client = CryptoPayClient('https://pay.crypt.example', 'token')

    with pytest.raises(CryptoPayAPIError, match='502'):
        await client.get_invoices([1])
