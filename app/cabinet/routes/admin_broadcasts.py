from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.cabinet.schemas.broadcasts import (
    BroadcastCreateRequest,
    BroadcastListResponse,
    BroadcastResponse,
    BroadcastTarget,
    BroadcastTargetCountResponse,
)
from app.database.crud.broadcast import delete_broadcast, get_broadcast_by_id, get_broadcasts
from app.services.broadcast_service import BroadcastAlreadyRunningError, BroadcastService

from ..dependencies import get_broadcast_service, get_cabinet_db, require_admin_token


router = APIRouter(prefix='/admin/broadcasts', tags=['Cabinet Admin Broadcasts'])


def _to_response(broadcast, service: BroadcastService) -> BroadcastResponse:
    return BroadcastResponse(
        id=broadcast.id,
        target_type=broadcast.target_type,
        message_text=broadcast.message_text,
        total_count=broadcast.total_count or 0,
        sent_count=broadcast.sent_count or 0,
        failed_count=broadcast.failed_count or 0,
        status=broadcast.status,
        is_running=service.is_running(broadcast.id),
        created_at=broadcast.created_at,
        completed_at=broadcast.completed_at,
    )


@router.get('/targets/{target_type}', response_model=BroadcastTargetCountResponse)
async def count_broadcast_targets(
    target_type: BroadcastTarget,
    _: str = Depends(require_admin_token),
    service: BroadcastService = Depends(get_broadcast_service),
    db: AsyncSession = Depends(get_cabinet_db),
):
    return BroadcastTargetCountResponse(target_type=target_type, count=await service.count_targets(db, target_type))


@router.get('', response_model=BroadcastListResponse)
async def list_broadcasts(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    _: str = Depends(require_admin_token),
    service: BroadcastService = Depends(get_broadcast_service),
    db: AsyncSession = Depends(get_cabinet_db),
):
    rows, total = await get_broadcasts(db, limit=limit, offset=offset)
    return BroadcastListResponse(items=[_to_response(row, service) for row in rows], total=total)


@router.post('', response_model=BroadcastResponse, status_code=status.HTTP_201_CREATED)
async def create_broadcast(
    payload: BroadcastCreateRequest,
    _: str = Depends(require_admin_token),
    service: BroadcastService = Depends(get_broadcast_service),
    db: AsyncSession = Depends(get_cabinet_db),
):
    broadcast = await service.create(db, target_type=payload.target_type, message_text=payload.message_text)
    if payload.start:
        await service.start(broadcast.id, broadcast.target_type, broadcast.message_text)
    return _to_response(broadcast, service)


@router.post('/{broadcast_id}/start', response_model=BroadcastResponse)
async def start_broadcast(
    broadcast_id: int,
    _: str = Depends(require_admin_token),
    service: BroadcastService = Depends(get_broadcast_service),
    db: AsyncSession = Depends(get_cabinet_db),
):
    broadcast = await get_broadcast_by_id(db, broadcast_id)
    if broadcast is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Broadcast not found')
    if broadcast.is_finished:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='Broadcast already finished')
    try:
        await service.start(broadcast.id, broadcast.target_type, broadcast.message_text)
    except BroadcastAlreadyRunningError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    return _to_response(broadcast, service)


@router.get('/{broadcast_id}', response_model=BroadcastResponse)
async def get_broadcast(
    broadcast_id: int,
    _: str = Depends(require_admin_token),
    service: BroadcastService = Depends(get_broadcast_service),
    db: AsyncSession = Depends(get_cabinet_db),
):
    broadcast = await get_broadcast_by_id(db, broadcast_id)
    if broadcast is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Broadcast not found')
    return _to_response(broadcast, service)


@router.delete('/{broadcast_id}')
async def remove_broadcast(
    broadcast_id: int,
    _: str = Depends(require_admin_token),
    service: BroadcastService = Depends(get_broadcast_service),
    db: AsyncSession = Depends(get_cabinet_db),
):
    if service.is_running(broadcast_id):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail='Broadcast is running')
    if not await delete_broadcast(db, broadcast_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Broadcast not found')
    await db.commit()
    return {'success': True}
