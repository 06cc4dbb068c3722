import hmac
from collections.abc import AsyncIterator

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from app.services.broadcast_service import BroadcastService
from app.services.promo_code_service import PromoCodeService
from app.services.promo_tariff_service import PromoTariffService


bearer_scheme = HTTPBearer(auto_error=False)


async def get_cabinet_db(request: Request) -> AsyncIterator[AsyncSession]:
    async with request.app.state.session_factory() as session:
        yield session


async def require_admin_token(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> str:
    expected = request.app.state.config.ADMIN_API_TOKEN
    if not expected:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail='Admin API is disabled')
    if credentials is None or not hmac.compare_digest(credentials.credentials, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail='Invalid admin token')
    return credentials.credentials


def get_promo_code_service(request: Request) -> PromoCodeService:
    return request.app.state.promo_code_service


def get_promo_tariff_service(request: Request) -> PromoTariffService:
    return request.app.state.promo_tariff_service


def get_broadcast_service(request: Request) -> BroadcastService:
    return request.app.state.broadcast_service
