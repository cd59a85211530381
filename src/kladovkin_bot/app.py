import asyncio
import logging
import logging.handlers
from datetime import timedelta
from pathlib import Path
from typing import Optional

from .bot.bot import TelegramBot
from .config import AppConfig
from .database import Database
from .matcher import SubscriptionMatcher
from .notifier import Notifier, NotifyResult
from .scheduler import TaskScheduler
from .scraper import Scraper, ScrapeResult
from .source import BaseSource, KladovkinSource

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"

SCRAPE_TASK = "scrape"
NOTIFY_TASK = "notify"

# Seconds running cycles get to finish on shutdown
SHUTDOWN_GRACE = 30.0


def setup_logging(log_dir: Optional[Path] = None, level: int = logging.INFO) -> None:
    """Configure logging

    - stdout (collected by journald)
    - file rotated at midnight, 30 days kept
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Drop handlers from a previous call
    root_logger.handlers.clear()

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root_logger.addHandler(stream_handler)

    if log_dir:
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.TimedRotatingFileHandler(
            filename=log_dir / "app.log",
            when="midnight",
            interval=1,
            backupCount=30,
            encoding="utf-8"
        )
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        file_handler.suffix = "%Y-%m-%d"
        root_logger.addHandler(file_handler)

    # Suppress noisy library logs
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)


def create_source(config: AppConfig) -> BaseSource:
    """Factory function to create the listing source from config"""
    return KladovkinSource(url=config.scrape_url, timeout=config.http_timeout)


class Application:
    """Main application that wires the scraper, notifier, scheduler and bot"""

    def __init__(self, config: AppConfig, db: Database, source: Optional[BaseSource] = None):
        self.config = config
        self.db = db
        self.bot = TelegramBot(config.bot_token, db)
        self.source = source or create_source(config)
        self.scraper = Scraper(self.source, db)
        self.matcher = SubscriptionMatcher(db, cooldown=timedelta(seconds=config.notification_cooldown))
        self.notifier = Notifier(db, self.matcher, self.bot)
        self.scheduler = TaskScheduler(
            alert=self._notify_admin,
            failure_alert_threshold=config.failure_alert_threshold,
        )
        self.scheduler.add_task(SCRAPE_TASK, self.scrape, config.scrape_interval)
        self.scheduler.add_task(NOTIFY_TASK, self.notify, config.notify_interval)

    async def _notify_admin(self, message: str) -> None:
        """Send notification to admin"""
        if not self.config.admin_chat_id:
            logger.warning("Admin chat_id is not configured, alert not sent")
            return
        if await self.bot.send_admin_alert(self.config.admin_chat_id, message):
            logger.info("📢 Admin alert sent")

    async def scrape(self) -> ScrapeResult:
        return await self.scraper.run_cycle()

    async def notify(self) -> NotifyResult:
        return await self.notifier.run_cycle()

    def run(self, run_on_start: bool = False) -> None:
        """Start the bot and the periodic tasks (blocking until SIGINT/SIGTERM)"""
        application = self.bot.setup()

        async def post_init(app) -> None:
            self.scheduler.start()
            if run_on_start:
                # Fill the catalog right away instead of waiting a full interval
                asyncio.get_running_loop().create_task(self._initial_cycle())

        async def post_shutdown(app) -> None:
            await self.scheduler.shutdown(grace=SHUTDOWN_GRACE)
            self.source.close()

        application.post_init = post_init
        application.post_shutdown = post_shutdown

        logger.info("🤖 Telegram Bot starting...")
        application.run_polling()
        logger.info("🛑 Stopped")

    async def _initial_cycle(self) -> None:
        if await self.scheduler.run_now(SCRAPE_TASK):
            await self.scheduler.run_now(NOTIFY_TASK)

    async def run_once(self, task_name: str) -> bool:
        """Run a single cycle of one task with an initialized bot (CLI one-shot)"""
        application = self.bot.setup()
        try:
            async with application:
                return await self.scheduler.run_now(task_name)
        finally:
            self.source.close()
