from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings, settings as default_settings
from app.database.crud.customer import (
    get_trial_customers_for_inactive_notification,
    update_trial_inactive_notified_at,
)
from app.external.remnawave_api import RemnaWaveAPIError
from app.services.notification_service import NotificationService
from app.services.remnawave_service import RemnaWaveConfigurationError, RemnaWaveService


logger = structlog.get_logger(__name__)


class TrialNotificationService:
    """Reminds trial customers who never connected an hour after signup."""

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        remnawave_service: RemnaWaveService,
        notification_service: NotificationService,
        config: Settings | None = None,
    ):
        self.config = config or default_settings
        self.session_factory = session_factory
        self.remnawave_service = remnawave_service
        self.notification_service = notification_service

    async def notify_inactive_trial_users(self, now: datetime | None = None) -> int:
        if not self.config.TRIAL_INACTIVE_NOTIFICATION_ENABLED:
            return 0

        current = now or datetime.now(UTC)
        notified = 0
        async with self.session_factory() as db:
            customers = await get_trial_customers_for_inactive_notification(db, now=current)
            for customer in customers:
                try:
                    user = await self.remnawave_service.get_user_by_telegram_id(customer.telegram_id)
                except (RemnaWaveAPIError, RemnaWaveConfigurationError) as exc:
                    logger.warning('Failed to load panel user for trial check', customer_id=customer.id, exc=exc)
                    continue

                if user is None or user.first_connected_at is not None:
                    continue

                sent = await self.notification_service.send(
                    customer.telegram_id,
                    'trial_inactive_notification',
                    language=customer.language,
                )
                if not sent:
                    continue

                await update_trial_inactive_notified_at(db, customer, current)
                await db.commit()
                notified += 1

        if notified:
            logger.info('Sent trial inactivity reminders', count=notified)
        return notified
