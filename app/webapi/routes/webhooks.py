import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings
from app.services.remnawave_webhook_service import RemnawaveWebhookService
from app.services.tribute_service import TributeService
from app.utils.webhook_signature import verify_hmac_signature
from app.webapi.schemas.webhooks import RemnawaveWebhookPayload, TributeWebhookPayload, WebhookAckResponse

from ..dependencies import get_settings, get_webapi_db


logger = structlog.get_logger(__name__)

REMNAWAVE_SIGNATURE_HEADER = 'X-Remnawave-Signature'
TRIBUTE_SIGNATURE_HEADER = 'trbt-signature'


def get_remnawave_webhook_service(request: Request) -> RemnawaveWebhookService:
    return request.app.state.remnawave_webhook_service


def get_tribute_service(request: Request) -> TributeService:
    return request.app.state.tribute_service


async def remnawave_webhook(
    request: Request,
    config: Settings = Depends(get_settings),
    service: RemnawaveWebhookService = Depends(get_remnawave_webhook_service),
    db: AsyncSession = Depends(get_webapi_db),
):
    body = await request.body()
    signature = request.headers.get(REMNAWAVE_SIGNATURE_HEADER)
    if not verify_hmac_signature(body, signature, config.REMNAWAVE_WEBHOOK_SECRET, source='remnawave'):
        logger.warning('Invalid remnawave webhook signature')
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail='Invalid signature')

    try:
        payload = RemnawaveWebhookPayload.model_validate_json(body)
    except ValidationError as exc:
        logger.warning('Invalid remnawave webhook payload', exc=exc)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='Invalid payload')

    try:
        outcome = await service.handle(db, payload)
    except Exception as exc:
        await db.rollback()
        logger.error('Failed to process remnawave webhook', event=payload.event, exc=exc)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail='Processing failed')

    return WebhookAckResponse(status=outcome.value)


async def tribute_webhook(
    request: Request,
    config: Settings = Depends(get_settings),
    service: TributeService = Depends(get_tribute_service),
    db: AsyncSession = Depends(get_webapi_db),
):
    body = await request.body()
    signature = request.headers.get(TRIBUTE_SIGNATURE_HEADER)
    if not verify_hmac_signature(body, signature, config.TRIBUTE_API_KEY, source='tribute'):
        logger.warning('Invalid tribute webhook signature')
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail='Invalid signature')

    try:
        webhook = TributeWebhookPayload.model_validate_json(body)
    except ValidationError as exc:
        logger.warning('Invalid tribute webhook payload', exc=exc)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='Invalid payload')

    try:
        outcome = await service.handle(db, webhook)
    except Exception as exc:
        await db.rollback()
        logger.error('Failed to process tribute webhook', event=webhook.name, exc=exc)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail='Processing failed')

    return WebhookAckResponse(status=outcome.value)


def create_webhook_router(config: Settings) -> APIRouter:
    """Webhook paths come from configuration, so the router is built per app."""
    router = APIRouter(tags=['Webhooks'])
    router.add_api_route(
        config.REMNAWAVE_WEBHOOK_PATH, remnawave_webhook, methods=['POST'], response_model=WebhookAckResponse
    )
    router.add_api_route(
        config.TRIBUTE_WEBHOOK_PATH, tribute_webhook, methods=['POST'], response_model=WebhookAckResponse
    )
    return router
