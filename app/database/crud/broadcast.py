from datetime import UTC, datetime

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.database.models import BroadcastHistory, BroadcastStatus


async def create_broadcast(db: AsyncSession, *, target_type: str, message_text: str) -> BroadcastHistory:
    broadcast = BroadcastHistory(
        target_type=target_type,
        message_text=message_text,
        status=BroadcastStatus.PENDING.value,
    )
    db.add(broadcast)
    await db.flush()
    return broadcast


async def get_broadcast_by_id(db: AsyncSession, broadcast_id: int) -> BroadcastHistory | None:
    return await db.get(BroadcastHistory, broadcast_id)


async def get_broadcasts(
    db: AsyncSession,
    *,
    limit: int = 20,
    offset: int = 0,
) -> tuple[list[BroadcastHistory], int]:
    query = (
        select(BroadcastHistory)
        .order_by(BroadcastHistory.created_at.desc())
        .offset(max(0, offset))
        .limit(max(1, min(limit, 100)))
    )
    rows = (await db.execute(query)).scalars().all()
    total = int((await db.execute(select(func.count(BroadcastHistory.id)))).scalar() or 0)
    return list(rows), total


async def set_broadcast_total(db: AsyncSession, broadcast_id: int, total: int) -> None:
    await db.execute(
        update(BroadcastHistory)
        .where(BroadcastHistory.id == broadcast_id)
        .values(total_count=total, status=BroadcastStatus.IN_PROGRESS.value)
    )


async def update_broadcast_progress(db: AsyncSession, broadcast_id: int, *, sent: int, failed: int) -> None:
    await db.execute(
        update(BroadcastHistory)
        .where(BroadcastHistory.id == broadcast_id)
        .values(sent_count=sent, failed_count=failed)
    )


async def finish_broadcast(
    db: AsyncSession,
    broadcast_id: int,
    *,
    status: BroadcastStatus,
    sent: int | None = None,
    failed: int | None = None,
) -> None:
    values: dict = {'status': status.value, 'completed_at': datetime.now(UTC)}
    if sent is not None:
        values['sent_count'] = sent
    if failed is not None:
        values['failed_count'] = failed
    await db.execute(update(BroadcastHistory).where(BroadcastHistory.id == broadcast_id).values(**values))


async def delete_broadcast(db: AsyncSession, broadcast_id: int) -> bool:
    result = await db.execute(delete(BroadcastHistory).where(BroadcastHistory.id == broadcast_id))
    return bool(result.rowcount)
