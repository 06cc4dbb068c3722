from __future__ import annotations

import asyncio
from collections.abc import Callable

import structlog
from aiogram.exceptions import TelegramForbiddenError, TelegramRetryAfter
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings, settings as default_settings
from app.database.crud.broadcast import (
    create_broadcast,
    finish_broadcast,
    set_broadcast_total,
    update_broadcast_progress,
)
from app.database.crud.customer import BROADCAST_TARGETS, count_customers_for_broadcast, get_customers_for_broadcast
from app.database.models import BroadcastHistory, BroadcastStatus
from app.services.notification_service import NotificationService


logger = structlog.get_logger(__name__)

PROGRESS_EVERY = 50


class BroadcastAlreadyRunningError(Exception):
    def __init__(self, broadcast_id: int):
        self.broadcast_id = broadcast_id
        super().__init__(f'Broadcast {broadcast_id} is already running')


class BroadcastService:
    """Runs one background task per broadcast.

    A broadcast never touches purchases or entitlements; any failure inside the
    task ends in a ``failed`` history record instead of propagating.
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        notification_service: NotificationService,
        config: Settings | None = None,
    ):
        self.config = config or default_settings
        self.session_factory = session_factory
        self.notification_service = notification_service
        self._running: dict[int, asyncio.Task] = {}
        self._lock = asyncio.Lock()

    async def create(self, db: AsyncSession, *, target_type: str, message_text: str) -> BroadcastHistory:
        if target_type not in BROADCAST_TARGETS:
            raise ValueError(f'Unknown broadcast target: {target_type}')
        broadcast = await create_broadcast(db, target_type=target_type, message_text=message_text)
        await db.commit()
        await db.refresh(broadcast)
        logger.info('Broadcast created', broadcast_id=broadcast.id, target_type=target_type)
        return broadcast

    async def count_targets(self, db: AsyncSession, target_type: str) -> int:
        return await count_customers_for_broadcast(db, target_type)

    def is_running(self, broadcast_id: int) -> bool:
        task = self._running.get(broadcast_id)
        return task is not None and not task.done()

    async def start(self, broadcast_id: int, target_type: str, message_text: str) -> asyncio.Task:
        async with self._lock:
            if self.is_running(broadcast_id):
                logger.warning('Broadcast already running', broadcast_id=broadcast_id)
                raise BroadcastAlreadyRunningError(broadcast_id)
            task = asyncio.create_task(self._run(broadcast_id, target_type, message_text))
            self._running[broadcast_id] = task
        return task

    async def _release(self, broadcast_id: int) -> None:
        async with self._lock:
            self._running.pop(broadcast_id, None)

    async def _run(self, broadcast_id: int, target_type: str, message_text: str) -> None:
        try:
            await self._execute(broadcast_id, target_type, message_text)
        except Exception as exc:
            logger.error('Broadcast execution failed', broadcast_id=broadcast_id, exc=exc)
            try:
                async with self.session_factory() as db:
                    await finish_broadcast(db, broadcast_id, status=BroadcastStatus.FAILED)
                    await db.commit()
            except Exception as store_exc:
                logger.error('Failed to mark broadcast as failed', broadcast_id=broadcast_id, exc=store_exc)
        finally:
            await self._release(broadcast_id)

    async def _execute(self, broadcast_id: int, target_type: str, message_text: str) -> None:
        async with self.session_factory() as db:
            customers = await get_customers_for_broadcast(db, target_type)
            recipients = [customer.telegram_id for customer in customers]
            await set_broadcast_total(db, broadcast_id, len(recipients))
            await db.commit()

            delay = 1 / max(1, self.config.BROADCAST_RATE_LIMIT_PER_SECOND)
            sent = failed = 0
            for index, telegram_id in enumerate(recipients, start=1):
                if await self._deliver(telegram_id, message_text):
                    sent += 1
                else:
                    failed += 1

                if index % PROGRESS_EVERY == 0:
                    await update_broadcast_progress(db, broadcast_id, sent=sent, failed=failed)
                    await db.commit()
                await asyncio.sleep(delay)

            await finish_broadcast(db, broadcast_id, status=BroadcastStatus.COMPLETED, sent=sent, failed=failed)
            await db.commit()

        logger.info('Broadcast completed', broadcast_id=broadcast_id, sent=sent, failed=failed)

    async def _deliver(self, telegram_id: int, message_text: str) -> bool:
        try:
            await self.notification_service.send_text(telegram_id, message_text)
        except TelegramRetryAfter as exc:
            await asyncio.sleep(exc.retry_after)
            try:
                await self.notification_service.send_text(telegram_id, message_text)
            except Exception as retry_exc:
                logger.debug('Broadcast delivery failed after retry', telegram_id=telegram_id, exc=retry_exc)
                return False
        except TelegramForbiddenError:
            return False
        except Exception as exc:
            logger.debug('Broadcast delivery failed', telegram_id=telegram_id, exc=exc)
            return False
        return True
