from collections.abc import Awaitable, Callable
from typing import Any

import structlog
from aiogram import BaseMiddleware
from aiogram.types import TelegramObject
from sqlalchemy.ext.asyncio import AsyncSession

from app.database.crud.customer import get_or_create_customer


logger = structlog.get_logger(__name__)


class DatabaseMiddleware(BaseMiddleware):
    """Opens a session per update and resolves the customer behind it."""

    def __init__(self, session_factory: Callable[[], AsyncSession], default_language: str = 'ru'):
        self.session_factory = session_factory
        self.default_language = default_language

    async def __call__(
        self,
        handler: Callable[[TelegramObject, dict[str, Any]], Awaitable[Any]],
        event: TelegramObject,
        data: dict[str, Any],
    ) -> Any:
        async with self.session_factory() as db:
            data['db'] = db
            user = data.get('event_from_user')
            if user is not None and not user.is_bot:
                customer = await get_or_create_customer(
                    db,
                    telegram_id=user.id,
                    language=user.language_code or self.default_language,
                )
                await db.commit()
                data['db_user'] = customer
            return await handler(event, data)
