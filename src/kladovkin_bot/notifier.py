import asyncio
import html
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Protocol, Tuple

from .matcher import SubscriptionMatcher
from .models import Match, User
from .store import SubscriptionStore

logger = logging.getLogger(__name__)

# Batch sending configuration
BATCH_SIZE = 25  # Number of users notified concurrently
BATCH_INTERVAL = 1.0  # Seconds between batches (Telegram rate limit ~30/sec)

# Telegram message limits
MAX_MESSAGE_LENGTH = 4096
MAX_DESCRIPTION_LENGTH = 300
MAX_FIELD_LENGTH = 100


class NotificationSink(Protocol):
    async def send_notification(self, chat_id: int, text: str) -> bool:
        ...


@dataclass
class NotifyResult:
    """Counters of one notification cycle"""
    subscriptions: int = 0
    matched_users: int = 0
    skipped_cooldown: int = 0
    eligible: int = 0
    sent: int = 0
    failed: int = 0


def _format_price(price: float) -> str:
    if price == int(price):
        return f"{int(price):,}".replace(",", " ")
    return f"{price:,.2f}".replace(",", " ")


def _shorten(text: str, limit: int) -> str:
    """Cut text to ``limit`` characters before escaping"""
    if len(text) <= limit:
        return text
    return text[:limit - 1].rstrip() + "…"


def _format_match(match: Match) -> str:
    unit = match.unit
    lines = [
        f"📦 <b>{html.escape(_shorten(unit.storage_name, MAX_FIELD_LENGTH))}</b>, "
        f"{html.escape(_shorten(unit.city, MAX_FIELD_LENGTH))}"
    ]
    size_line = f"Размер: <code>{html.escape(_shorten(unit.size, MAX_FIELD_LENGTH))}</code>"
    if unit.dimension:
        size_line += f" ({html.escape(_shorten(unit.dimension, MAX_FIELD_LENGTH))})"
    lines.append(size_line)
    if unit.price:
        lines.append(f"Цена: {_format_price(unit.price)} ₽/мес")
    if unit.description:
        lines.append(html.escape(_shorten(unit.description, MAX_DESCRIPTION_LENGTH)))
    lines.append(f"Подписка #{match.subscription.id}")
    return "\n".join(lines) + "\n"


def format_notification(matches: List[Match]) -> str:
    """Build one HTML message listing the available units of a user.

    The text never exceeds MAX_MESSAGE_LENGTH: matches that do not fit are
    replaced by a "…и ещё N" line.
    """
    header = "🔔 <b>Освободились кладовки по вашим подпискам</b>\n"
    footer = "Отписаться: /list"
    # Room for the "…и ещё N" line
    reserve = 40

    blocks: List[str] = []
    length = len(header) + len(footer) + reserve
    for match in matches:
        block = _format_match(match)
        if blocks and length + len(block) + 1 > MAX_MESSAGE_LENGTH:
            break
        blocks.append(block)
        length += len(block) + 1

    parts = [header] + blocks
    hidden = len(matches) - len(blocks)
    if hidden:
        parts.append(f"…и ещё {hidden} (подробнее: /list)\n")
    parts.append(footer)
    return "\n".join(parts)


class Notifier:
    """Sends at most one availability message per user per cycle.

    The cooldown check and the last_notified update together keep a user from
    being notified twice within one cooldown window. last_notified is only
    written after a successful send, so a failed user is retried next cycle.
    """

    def __init__(
        self,
        store: SubscriptionStore,
        matcher: SubscriptionMatcher,
        sink: NotificationSink,
        batch_size: int = BATCH_SIZE,
        batch_interval: float = BATCH_INTERVAL,
    ):
        self.store = store
        self.matcher = matcher
        self.sink = sink
        self.batch_size = batch_size
        self.batch_interval = batch_interval

    def collect(self, now: datetime, result: NotifyResult) -> List[Tuple[User, List[Match]]]:
        """Find users with matches that are outside their cooldown"""
        subscriptions = self.store.active_subscriptions()
        result.subscriptions = len(subscriptions)

        grouped = self.matcher.group_by_user(subscriptions)
        result.matched_users = len(grouped)

        pending: List[Tuple[User, List[Match]]] = []
        for user_id, matches in grouped.items():
            try:
                user = self.store.get_user(user_id)
            except Exception as e:
                logger.error(f"❌ Failed to load user {user_id}: {e}")
                continue
            if user is None:
                logger.error(f"❌ User {user_id} not found for {len(matches)} matched subscriptions")
                continue
            if not self.matcher.is_due(user, now):
                result.skipped_cooldown += 1
                logger.debug(f"User {user_id} notified at {user.last_notified}, still in cooldown")
                continue
            pending.append((user, matches))

        result.eligible = len(pending)
        return pending

    async def _notify_user(self, user: User, matches: List[Match], now: datetime) -> bool:
        text = format_notification(matches)
        try:
            sent = await self.sink.send_notification(user.telegram_id, text)
        except Exception as e:
            logger.error(f"❌ Failed to notify user {user.id} (chat {user.telegram_id}): {e}")
            return False
        if not sent:
            logger.error(f"❌ Failed to notify user {user.id} (chat {user.telegram_id})")
            return False

        try:
            self.store.update_user_last_notified(user.id, now)
        except Exception as e:
            logger.error(f"❌ Notified user {user.id} but failed to record last_notified: {e}")
        return True

    async def run_cycle(self, now: Optional[datetime] = None) -> NotifyResult:
        """Match subscriptions and send notifications"""
        now = now or datetime.now()
        result = NotifyResult()
        pending = self.collect(now, result)

        for i in range(0, len(pending), self.batch_size):
            batch = pending[i:i + self.batch_size]
            outcomes = await asyncio.gather(
                *[self._notify_user(user, matches, now) for user, matches in batch],
                return_exceptions=True
            )
            sent = sum(1 for r in outcomes if r is True)
            result.sent += sent
            result.failed += len(batch) - sent

            if sent > 0:
                logger.info(f"  📤 Batch sent {sent}/{len(batch)}")

            # Rate limit between batches
            if i + self.batch_size < len(pending) and self.batch_interval > 0:
                await asyncio.sleep(self.batch_interval)

        logger.info(
            f"✅ Notify done: {result.subscriptions} active subscriptions, "
            f"{result.matched_users} users matched, {result.skipped_cooldown} in cooldown, "
            f"sent {result.sent}, failed {result.failed}"
        )
        return result
