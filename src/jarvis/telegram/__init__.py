"""Telegram integration."""

from .bot import TelegramBot

__all__ = ["TelegramBot"]
