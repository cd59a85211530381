import asyncio
import html
import logging
from typing import Optional

from telegram import LinkPreviewOptions
from telegram.constants import ParseMode
from telegram.error import BadRequest, Forbidden, NetworkError, TelegramError, TimedOut
from telegram.ext import Application, CallbackQueryHandler, CommandHandler, MessageHandler, filters
from telegram.request import HTTPXRequest

from ..database import Database
from .handlers import MENU_LIST, MENU_NEW, BotHandlers

logger = logging.getLogger(__name__)

# Telegram API timeouts (seconds)
CONNECT_TIMEOUT = 30.0
READ_TIMEOUT = 30.0
WRITE_TIMEOUT = 30.0
POOL_TIMEOUT = 10.0

# Retry on timeouts and network errors only
MAX_RETRIES = 3
RETRY_DELAY = 2.0


class TelegramBot:
    """Telegram bot wrapper, also the outbound notification sink"""

    def __init__(self, token: str, db: Database, retry_delay: float = RETRY_DELAY):
        self.token = token
        self.db = db
        self.retry_delay = retry_delay
        self.handlers = BotHandlers(db)
        self.application: Optional[Application] = None

    def setup(self) -> Application:
        """Setup bot application with handlers"""
        request = HTTPXRequest(
            connect_timeout=CONNECT_TIMEOUT,
            read_timeout=READ_TIMEOUT,
            write_timeout=WRITE_TIMEOUT,
            pool_timeout=POOL_TIMEOUT,
        )

        self.application = (
            Application.builder()
            .token(self.token)
            .request(request)
            .build()
        )

        # Register command handlers
        self.application.add_handler(CommandHandler("start", self.handlers.start))
        self.application.add_handler(CommandHandler("help", self.handlers.help))
        self.application.add_handler(CommandHandler("subscribe", self.handlers.new_subscription))
        self.application.add_handler(CommandHandler("list", self.handlers.list_subscriptions))
        self.application.add_handler(CommandHandler("stats", self.handlers.stats))

        # Main menu buttons
        self.application.add_handler(MessageHandler(filters.Text([MENU_NEW]), self.handlers.new_subscription))
        self.application.add_handler(MessageHandler(filters.Text([MENU_LIST]), self.handlers.list_subscriptions))

        # Handle unknown commands
        self.application.add_handler(MessageHandler(filters.COMMAND, self.handlers.unknown_command))

        # Handle unknown text messages
        self.application.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, self.handlers.unknown_message))

        # Handle inline keyboard callbacks
        self.application.add_handler(CallbackQueryHandler(self.handlers.handle_callback))

        self.application.add_error_handler(self.handlers.on_error)

        return self.application

    async def _send_with_retry(self, chat_id: int, message: str, disable_preview: bool = False) -> bool:
        """Send a message, retrying on timeouts and network errors

        Returns:
            True: sent
            False: failed (bot blocked by the user or other error)
        """
        if self.application is None:
            raise RuntimeError("bot is not set up")

        last_error = None

        for attempt in range(MAX_RETRIES):
            try:
                await self.application.bot.send_message(
                    chat_id=chat_id,
                    text=message,
                    parse_mode=ParseMode.HTML,
                    link_preview_options=LinkPreviewOptions(is_disabled=disable_preview)
                )
                return True
            except Forbidden:
                # User blocked the bot, no point retrying
                logger.warning(f"Chat {chat_id} blocked the bot")
                return False
            except BadRequest as e:
                # BadRequest subclasses NetworkError but is permanent
                logger.error(f"Send to {chat_id} rejected: {e}")
                return False
            except (TimedOut, NetworkError) as e:
                last_error = e
                if attempt < MAX_RETRIES - 1:
                    logger.warning(f"Send to {chat_id} timed out, retry {attempt + 1}...")
                    await asyncio.sleep(self.retry_delay)
            except TelegramError as e:
                logger.error(f"Send to {chat_id} failed: {e}")
                return False

        logger.error(f"Send to {chat_id} failed after {MAX_RETRIES} attempts: {last_error}")
        return False

    async def send_notification(self, chat_id: int, text: str) -> bool:
        """Send an availability notification

        Returns:
            True if sent successfully, False if failed
        """
        return await self._send_with_retry(chat_id, text, disable_preview=True)

    async def send_admin_alert(self, chat_id: int, message: str) -> bool:
        """Send admin alert message"""
        alert_message = (
            f"🚨 <b>Системное уведомление</b>\n\n"
            f"{html.escape(message)}"
        )
        return await self._send_with_retry(chat_id, alert_message, disable_preview=True)
