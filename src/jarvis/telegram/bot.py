"""Telegram bot integration for Jarvis."""

import logging

from groq import AsyncGroq
from telegram import Update
from telegram.constants import ChatAction
from telegram.ext import (
    Application,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

from ..agent import FALLBACK_REPLY, ChatOrchestrator
from ..background import BackgroundTasks
from ..config import Settings, build_store, load_settings
from ..llm import GroqCompletionService
from ..logging import get_logger
from ..memory import FactExtractor, MemoryManager, Platform, make_user_id
from ..notify import NotificationSink, NullSink, WebhookSink
from ..platforms import MESSAGE_LIMITS, truncate_message

logger = logging.getLogger(__name__)

WELCOME_MESSAGE = (
    "Hello! I'm Jarvis, your AI business assistant. I'm here to help with "
    "business operations, customer questions, tasks, and more. "
    "What can I assist you with today?\n\n"
    "/forget - Delete everything I remember about you"
)

MAX_MESSAGE_LENGTH = MESSAGE_LIMITS[Platform.TELEGRAM]
SHUTDOWN_TIMEOUT = 10.0


def format_reply(text: str) -> str:
    """Fit a reply into a single Telegram message."""
    return truncate_message(text, MAX_MESSAGE_LENGTH)


class TelegramBot:
    """Telegram bot relaying messages through the chat orchestrator."""

    def __init__(
        self,
        settings: Settings | None = None,
        orchestrator: ChatOrchestrator | None = None,
    ) -> None:
        self.settings = settings or load_settings()
        self.token = self.settings.telegram_token
        if not self.token:
            raise ValueError("TELEGRAM_TOKEN not set")

        self.json_logger = get_logger()
        self._store = None

        if orchestrator is None:
            orchestrator = self._build_orchestrator()
        self.orchestrator = orchestrator
        self._app: Application | None = None

    def _build_orchestrator(self) -> ChatOrchestrator:
        """Wire store, memory, LLM and notifications from settings."""
        self._store = build_store(self.settings)
        memory = MemoryManager(
            self._store, max_stored_turns=self.settings.max_stored_turns
        )

        groq_client = AsyncGroq(api_key=self.settings.groq_api_key)
        llm = GroqCompletionService(groq_client, model=self.settings.groq_model)

        notifier: NotificationSink = NullSink()
        if any(self.settings.webhooks.values()):
            notifier = WebhookSink(self.settings.webhooks)

        background = BackgroundTasks()
        extractor = FactExtractor(
            llm,
            memory,
            notifier=notifier,
            event_log=self.json_logger,
            timeout=self.settings.extraction_timeout,
            background=background,
        )
        return ChatOrchestrator(
            llm,
            memory,
            extractor=extractor,
            notifier=notifier,
            event_log=self.json_logger,
            background=background,
            timeout=self.settings.completion_timeout,
        )

    def _get_user_id(self, update: Update) -> str:
        """Get the user id for the chat of an update."""
        assert update.effective_chat is not None
        return make_user_id(Platform.TELEGRAM, update.effective_chat.id)

    async def _handle_start(
        self, update: Update, context: ContextTypes.DEFAULT_TYPE
    ) -> None:
        """Handle /start command."""
        assert update.message is not None
        self.json_logger.log("telegram_start", user_id=self._get_user_id(update))
        await update.message.reply_text(WELCOME_MESSAGE)

    async def _handle_forget(
        self, update: Update, context: ContextTypes.DEFAULT_TYPE
    ) -> None:
        """Handle /forget command: purge the caller's own data."""
        assert update.message is not None
        user_id = self._get_user_id(update)

        existed = self.orchestrator.memory.purge_user(user_id)
        self.json_logger.log("user_purged", user_id=user_id, existed=existed)

        if existed:
            await update.message.reply_text("Done. I've forgotten our conversations.")
        else:
            await update.message.reply_text("I don't have anything stored about you.")

    async def _handle_message(
        self, update: Update, context: ContextTypes.DEFAULT_TYPE
    ) -> None:
        """Handle incoming text messages."""
        assert update.message is not None
        assert update.message.text is not None

        user_id = self._get_user_id(update)
        user = update.effective_user
        display_name = user.first_name if user else None

        try:
            await update.message.chat.send_action(ChatAction.TYPING)
            result = await self.orchestrator.handle(
                user_id,
                Platform.TELEGRAM,
                update.message.text,
                display_name=display_name,
            )
            reply = result.response
        except Exception as e:
            logger.exception("Error processing message")
            self.json_logger.log("telegram_error", user_id=user_id, error=str(e))
            reply = FALLBACK_REPLY

        await update.message.reply_text(format_reply(reply))

    async def _post_shutdown(self, application: Application) -> None:
        """Called after Application.shutdown()."""
        await self.orchestrator.aclose(timeout=SHUTDOWN_TIMEOUT)
        if self._store is not None:
            self._store.close()

    def build_app(self) -> Application:
        """Build the Telegram application."""
        self._app = (
            Application.builder()
            .token(self.token)
            .post_shutdown(self._post_shutdown)
            .build()
        )

        self._app.add_handler(CommandHandler("start", self._handle_start))
        self._app.add_handler(CommandHandler("forget", self._handle_forget))
        self._app.add_handler(
            MessageHandler(filters.TEXT & ~filters.COMMAND, self._handle_message)
        )

        return self._app

    def run(self) -> None:
        """Run the bot (blocking)."""
        app = self.build_app()

        logger.info("Starting Telegram bot...")
        app.run_polling()
