import asyncio

import structlog
import uvicorn
from aiogram import Bot, Dispatcher

from app.config import settings
from app.database.database import AsyncSessionLocal, engine
from app.external.cryptopay import CryptoPayClient
from app.external.yookassa import YooKassaClient
from app.handlers import offers
from app.logging_config import configure_logging
from app.middlewares.database import DatabaseMiddleware
from app.services.broadcast_service import BroadcastService
from app.services.notification_service import FileTranslator, NotificationService
from app.services.offer_service import OfferService
from app.services.payment_service import PaymentService
from app.services.promo_code_service import PromoCodeService
from app.services.promo_tariff_service import PromoTariffService
from app.services.reconciliation_service import ReconciliationService
from app.services.recurring_billing_service import RecurringBillingService
from app.services.remnawave_service import RemnaWaveService
from app.services.remnawave_webhook_service import RemnawaveWebhookService
from app.services.scheduler_service import setup_scheduler
from app.services.trial_notification_service import TrialNotificationService
from app.services.tribute_service import TributeService
from app.services.winback_service import WinbackService
from app.webapi.app import create_app


logger = structlog.get_logger(__name__)


async def main():
    configure_logging(settings)

    bot = Bot(token=settings.BOT_TOKEN)
    translator = FileTranslator(settings.TRANSLATIONS_DIR, settings.DEFAULT_LANGUAGE)
    notification_service = NotificationService(bot, translator, default_language=settings.DEFAULT_LANGUAGE)

    yookassa_client = None
    if settings.is_yookassa_enabled():
        yookassa_client = YooKassaClient(
            settings.YOOKASSA_URL,
            settings.YOOKASSA_SHOP_ID,
            settings.YOOKASSA_SECRET_KEY,
            email=settings.YOOKASSA_EMAIL,
            return_url=settings.YOOKASSA_RETURN_URL,
        )
    cryptopay_client = None
    if settings.is_crypto_pay_enabled():
        cryptopay_client = CryptoPayClient(settings.CRYPTO_PAY_URL, settings.CRYPTO_PAY_TOKEN)

    remnawave_service = RemnaWaveService(settings)
    payment_service = PaymentService(
        config=settings,
        remnawave_service=remnawave_service,
        notification_service=notification_service,
        yookassa_client=yookassa_client,
        cryptopay_client=cryptopay_client,
    )
    offer_service = OfferService(payment_service, days_in_month=settings.DAYS_IN_MONTH)
    winback_service = WinbackService(offer_service, notification_service, settings)
    recurring_billing_service = None
    if yookassa_client is not None:
        recurring_billing_service = RecurringBillingService(
            yookassa_client, payment_service, notification_service, settings
        )

    remnawave_webhook_service = RemnawaveWebhookService(
        notification_service,
        recurring_billing_service=recurring_billing_service,
        winback_service=winback_service,
        config=settings,
    )
    tribute_service = TributeService(payment_service, settings)
    promo_code_service = PromoCodeService(settings, remnawave_service)
    promo_tariff_service = PromoTariffService(settings)
    broadcast_service = BroadcastService(AsyncSessionLocal, notification_service, settings)

    reconciliation_service = ReconciliationService(
        AsyncSessionLocal,
        payment_service,
        yookassa_client=yookassa_client,
        cryptopay_client=cryptopay_client,
        config=settings,
    )
    trial_notification_service = TrialNotificationService(
        AsyncSessionLocal, remnawave_service, notification_service, settings
    )
    scheduler = setup_scheduler(reconciliation_service, trial_notification_service, settings)

    dp = Dispatcher()
    dp.update.outer_middleware(DatabaseMiddleware(AsyncSessionLocal, settings.DEFAULT_LANGUAGE))
    dp.workflow_data.update(
        payment_service=payment_service,
        offer_service=offer_service,
        winback_service=winback_service,
        promo_code_service=promo_code_service,
        promo_tariff_service=promo_tariff_service,
        notification_service=notification_service,
    )
    offers.register_handlers(dp)

    web_app = create_app(
        settings,
        AsyncSessionLocal,
        remnawave_webhook_service=remnawave_webhook_service,
        tribute_service=tribute_service,
        promo_code_service=promo_code_service,
        promo_tariff_service=promo_tariff_service,
        broadcast_service=broadcast_service,
    )
    server = uvicorn.Server(
        uvicorn.Config(web_app, host=settings.WEB_API_HOST, port=settings.WEB_API_PORT, log_config=None)
    )

    scheduler.start()
    logger.info('Starting bot and web api', port=settings.WEB_API_PORT)
    try:
        await asyncio.gather(dp.start_polling(bot), server.serve())
    finally:
        scheduler.shutdown(wait=False)
        await bot.session.close()
        await engine.dispose()


if __name__ == '__main__':
    asyncio.run(main())
