from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.cabinet.schemas.promo_codes import (
    ActivationListResponse,
    ActivationResponse,
    PromoActiveUpdateRequest,
    PromoTariffCodeCreateRequest,
    PromoTariffCodeListResponse,
    PromoTariffCodeResponse,
)
from app.database.crud.promo_tariff_code import (
    get_promo_tariff_activations,
    get_promo_tariff_code_by_id,
    get_promo_tariff_codes,
)
from app.services.promo_tariff_service import PromoTariffService

from ..dependencies import get_cabinet_db, get_promo_tariff_service, require_admin_token


router = APIRouter(prefix='/admin/promo-tariff-codes', tags=['Cabinet Admin Promo Tariff Codes'])

NOT_FOUND_DETAIL = 'Promo tariff code not found'


def _to_response(promo) -> PromoTariffCodeResponse:
    return PromoTariffCodeResponse(
        id=promo.id,
        code=promo.code,
        price=promo.price,
        devices=promo.devices,
        months=promo.months,
        max_activations=promo.max_activations,
        current_activations=promo.current_activations,
        activations_left=promo.activations_left,
        valid_hours=promo.valid_hours,
        is_active=promo.is_active,
        valid_until=promo.valid_until,
        created_at=promo.created_at,
    )


@router.get('', response_model=PromoTariffCodeListResponse)
async def list_promo_tariff_codes(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    _: str = Depends(require_admin_token),
    db: AsyncSession = Depends(get_cabinet_db),
):
    items = [_to_response(promo) for promo in await get_promo_tariff_codes(db, limit=limit, offset=offset)]
    return PromoTariffCodeListResponse(items=items, total=len(items))


@router.post('', response_model=PromoTariffCodeResponse, status_code=status.HTTP_201_CREATED)
async def create_promo_tariff_code(
    payload: PromoTariffCodeCreateRequest,
    _: str = Depends(require_admin_token),
    service: PromoTariffService = Depends(get_promo_tariff_service),
    db: AsyncSession = Depends(get_cabinet_db),
):
    result = await service.create_code(
        db,
        code=payload.code,
        price=payload.price,
        devices=payload.devices,
        months=payload.months,
        max_activations=payload.max_activations,
        valid_hours=payload.valid_hours,
        admin_id=payload.admin_id,
        valid_until=payload.valid_until,
    )
    if result.error_key == 'promo_tariff_code_exists':
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=result.error_key)
    if result.error_key:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=result.error_key)
    return _to_response(result.promo)


@router.get('/{promo_id}', response_model=PromoTariffCodeResponse)
async def get_promo_tariff_code(
    promo_id: int,
    _: str = Depends(require_admin_token),
    db: AsyncSession = Depends(get_cabinet_db),
):
    promo = await get_promo_tariff_code_by_id(db, promo_id)
    if promo is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=NOT_FOUND_DETAIL)
    return _to_response(promo)


@router.patch('/{promo_id}', response_model=PromoTariffCodeResponse)
async def update_promo_tariff_code_status(
    promo_id: int,
    payload: PromoActiveUpdateRequest,
    _: str = Depends(require_admin_token),
    service: PromoTariffService = Depends(get_promo_tariff_service),
    db: AsyncSession = Depends(get_cabinet_db),
):
    promo = await service.set_active(db, promo_id, payload.is_active)
    if promo is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=NOT_FOUND_DETAIL)
    return _to_response(promo)


@router.delete('/{promo_id}')
async def delete_promo_tariff_code(
    promo_id: int,
    _: str = Depends(require_admin_token),
    service: PromoTariffService = Depends(get_promo_tariff_service),
    db: AsyncSession = Depends(get_cabinet_db),
):
    if not await service.delete_code(db, promo_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=NOT_FOUND_DETAIL)
    return {'success': True}


@router.get('/{promo_id}/activations', response_model=ActivationListResponse)
async def list_promo_tariff_activations(
    promo_id: int,
    _: str = Depends(require_admin_token),
    db: AsyncSession = Depends(get_cabinet_db),
):
    if await get_promo_tariff_code_by_id(db, promo_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=NOT_FOUND_DETAIL)
    activations = await get_promo_tariff_activations(db, promo_id)
    items = [ActivationResponse(customer_id=item.customer_id, activated_at=item.activated_at) for item in activations]
    return ActivationListResponse(items=items, total=len(items))
