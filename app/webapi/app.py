from collections.abc import Callable

from fastapi import FastAPI
from sqlalchemy.ext.asyncio import AsyncSession

from app.cabinet.routes import admin_broadcasts, admin_promo_codes, admin_promo_tariff_codes
from app.config import Settings
from app.services.broadcast_service import BroadcastService
from app.services.promo_code_service import PromoCodeService
from app.services.promo_tariff_service import PromoTariffService
from app.services.remnawave_webhook_service import RemnawaveWebhookService
from app.services.tribute_service import TributeService
from app.webapi.routes.webhooks import create_webhook_router


def create_app(
    config: Settings,
    session_factory: Callable[[], AsyncSession],
    *,
    remnawave_webhook_service: RemnawaveWebhookService,
    tribute_service: TributeService,
    promo_code_service: PromoCodeService | None = None,
    promo_tariff_service: PromoTariffService | None = None,
    broadcast_service: BroadcastService | None = None,
) -> FastAPI:
    app = FastAPI(title='VPN shop billing', docs_url=None, redoc_url=None)
    app.state.config = config
    app.state.session_factory = session_factory
    app.state.remnawave_webhook_service = remnawave_webhook_service
    app.state.tribute_service = tribute_service
    app.state.promo_code_service = promo_code_service
    app.state.promo_tariff_service = promo_tariff_service
    app.state.broadcast_service = broadcast_service

    app.include_router(create_webhook_router(config))
    if promo_code_service is not None:
        app.include_router(admin_promo_codes.router, prefix='/cabinet')
    if promo_tariff_service is not None:
        app.include_router(admin_promo_tariff_codes.router, prefix='/cabinet')
    if broadcast_service is not None:
        app.include_router(admin_broadcasts.router, prefix='/cabinet')

    @app.get('/health')
    async def health():
        return {'status': 'ok'}

    return app
