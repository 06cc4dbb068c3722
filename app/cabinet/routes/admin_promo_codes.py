from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.cabinet.schemas.promo_codes import (
    ActivationListResponse,
    ActivationResponse,
    PromoActiveUpdateRequest,
    PromoCodeCreateRequest,
    PromoCodeListResponse,
    PromoCodeResponse,
)
from app.database.crud.promo_code import get_promo_code_activations, get_promo_code_by_id, get_promo_codes
from app.services.promo_code_service import PromoCodeService

from ..dependencies import get_cabinet_db, get_promo_code_service, require_admin_token


router = APIRouter(prefix='/admin/promo-codes', tags=['Cabinet Admin Promo Codes'])


def _to_response(promo) -> PromoCodeResponse:
    return PromoCodeResponse(
        id=promo.id,
        code=promo.code,
        bonus_days=promo.bonus_days,
        max_activations=promo.max_activations,
        current_activations=promo.current_activations,
        activations_left=promo.activations_left,
        is_active=promo.is_active,
        valid_until=promo.valid_until,
        created_at=promo.created_at,
    )


@router.get('', response_model=PromoCodeListResponse)
async def list_promo_codes(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    _: str = Depends(require_admin_token),
    db: AsyncSession = Depends(get_cabinet_db),
):
    items = [_to_response(promo) for promo in await get_promo_codes(db, limit=limit, offset=offset)]
    return PromoCodeListResponse(items=items, total=len(items))


@router.post('', response_model=PromoCodeResponse, status_code=status.HTTP_201_CREATED)
async def create_promo_code(
    payload: PromoCodeCreateRequest,
    _: str = Depends(require_admin_token),
    service: PromoCodeService = Depends(get_promo_code_service),
    db: AsyncSession = Depends(get_cabinet_db),
):
    result = await service.create_code(
        db,
        code=payload.code,
        bonus_days=payload.bonus_days,
        max_activations=payload.max_activations,
        admin_id=payload.admin_id,
        valid_until=payload.valid_until,
    )
    if result.error_key == 'promo_code_exists':
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=result.error_key)
    if result.error_key:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=result.error_key)
    return _to_response(result.promo)


@router.get('/{promo_id}', response_model=PromoCodeResponse)
async def get_promo_code(
    promo_id: int,
    _: str = Depends(require_admin_token),
    db: AsyncSession = Depends(get_cabinet_db),
):
    promo = await get_promo_code_by_id(db, promo_id)
    if promo is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Promo code not found')
    return _to_response(promo)


@router.patch('/{promo_id}', response_model=PromoCodeResponse)
async def update_promo_code_status(
    promo_id: int,
    payload: PromoActiveUpdateRequest,
    _: str = Depends(require_admin_token),
    service: PromoCodeService = Depends(get_promo_code_service),
    db: AsyncSession = Depends(get_cabinet_db),
):
    promo = await service.set_active(db, promo_id, payload.is_active)
    if promo is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Promo code not found')
    return _to_response(promo)


@router.delete('/{promo_id}')
async def delete_promo_code(
    promo_id: int,
    _: str = Depends(require_admin_token),
    service: PromoCodeService = Depends(get_promo_code_service),
    db: AsyncSession = Depends(get_cabinet_db),
):
    if not await service.delete_code(db, promo_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Promo code not found')
    return {'success': True}


@router.get('/{promo_id}/activations', response_model=ActivationListResponse)
async def list_promo_code_activations(
    promo_id: int,
    _: str = Depends(require_admin_token),
    db: AsyncSession = Depends(get_cabinet_db),
):
    if await get_promo_code_by_id(db, promo_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Promo code not found')
    activations = await get_promo_code_activations(db, promo_id)
    items = [ActivationResponse(customer_id=item.customer_id, activated_at=item.activated_at) for item in activations]
    return ActivationListResponse(items=items, total=len(items))
