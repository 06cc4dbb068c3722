from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Protocol

import structlog
from aiogram import Bot
from aiogram.types import InlineKeyboardButton, InlineKeyboardMarkup


logger = structlog.get_logger(__name__)

CALLBACK_BUY = 'buy'
CALLBACK_WINBACK = 'winback'
CALLBACK_PROMO_TARIFF = 'promo_tariff'
CALLBACK_SAVED_PAYMENT_METHODS = 'saved_payment_methods?from=notification'


class Translator(Protocol):
    def get_text(self, language: str, key: str) -> str: ...


class KeyTranslator:
    """Fallback translator that renders the i18n key itself."""

    def get_text(self, language: str, key: str) -> str:
        return key


class FileTranslator:
    """Loads ``<language>.json`` files from a directory, falling back to the default language."""

    def __init__(self, directory: str | Path, default_language: str = 'ru'):
        self.default_language = default_language
        self.texts: dict[str, dict[str, str]] = {}
        for path in sorted(Path(directory).glob('*.json')):
            with path.open(encoding='utf-8') as fh:
                self.texts[path.stem] = json.load(fh)
        logger.info('Translations loaded', languages=sorted(self.texts))

    def get_text(self, language: str, key: str) -> str:
        for lang in (language, self.default_language):
            text = self.texts.get(lang, {}).get(key)
            if text is not None:
                return text
        return key


class NotificationService:
    def __init__(self, bot: Bot, translator: Translator | None = None, *, default_language: str = 'ru'):
        self.bot = bot
        self.translator = translator or KeyTranslator()
        self.default_language = default_language

    def text(self, language: str | None, key: str, **params: Any) -> str:
        template = self.translator.get_text(language or self.default_language, key)
        if not params:
            return template
        try:
            return template.format(**params)
        except (KeyError, IndexError, ValueError):
            logger.warning('Failed to format translation', key=key, language=language)
            return template

    def button(self, language: str | None, key: str, callback_data: str) -> InlineKeyboardMarkup:
        return InlineKeyboardMarkup(
            inline_keyboard=[[InlineKeyboardButton(text=self.text(language, key), callback_data=callback_data)]]
        )

    async def send(
        self,
        telegram_id: int | None,
        key: str,
        *,
        language: str | None = None,
        reply_markup: InlineKeyboardMarkup | None = None,
        **params: Any,
    ) -> bool:
        if not telegram_id:
            return False
        try:
            await self.bot.send_message(telegram_id, self.text(language, key, **params), reply_markup=reply_markup)
        except Exception as exc:
            logger.warning('Failed to send telegram notification', telegram_id=telegram_id, key=key, exc=exc)
            return False
        return True

    async def send_text(
        self,
        telegram_id: int,
        text: str,
        *,
        reply_markup: InlineKeyboardMarkup | None = None,
    ) -> None:
        await self.bot.send_message(telegram_id, text, reply_markup=reply_markup)
