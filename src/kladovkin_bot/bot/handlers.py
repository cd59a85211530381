import logging
from functools import wraps
from typing import List, Optional, Tuple

from telegram import InlineKeyboardButton, InlineKeyboardMarkup, KeyboardButton, ReplyKeyboardMarkup, Update
from telegram.ext import ContextTypes

from ..database import Database
from ..models import Subscription

logger = logging.getLogger(__name__)

# Maximum active subscriptions per user
MAX_SUBSCRIPTIONS_PER_USER = 10

# Main menu buttons
MENU_NEW = "Новая подписка"
MENU_LIST = "Мои подписки"

ERROR_MESSAGE = "😔 Произошла ошибка, попробуйте ещё раз позже"
EXPIRED_MESSAGE = "⌛ Выбор устарел, начните заново: /subscribe"


def require_registration(func):
    """Decorator to check if user is registered before executing command"""
    @wraps(func)
    async def wrapper(self, update: Update, context: ContextTypes.DEFAULT_TYPE, *args, **kwargs):
        chat_id = update.effective_chat.id
        if not self.db.user_exists(chat_id):
            await update.effective_message.reply_text(
                "👋 Вы ещё не зарегистрированы, отправьте /start"
            )
            return
        return await func(self, update, context, *args, **kwargs)
    return wrapper


def main_menu() -> ReplyKeyboardMarkup:
    return ReplyKeyboardMarkup(
        [[KeyboardButton(MENU_NEW), KeyboardButton(MENU_LIST)]],
        resize_keyboard=True
    )


def _choice_keyboard(prefix: str, options: List[str], back: str) -> InlineKeyboardMarkup:
    # callback_data is limited to 64 bytes, so options are referenced by index
    keyboard = [
        [InlineKeyboardButton(option, callback_data=f"{prefix}:{i}")]
        for i, option in enumerate(options)
    ]
    keyboard.append([InlineKeyboardButton("↩️ Назад", callback_data=back)])
    return InlineKeyboardMarkup(keyboard)


def _describe(subscription: Subscription) -> str:
    return f"{subscription.city}, {subscription.storage_name}, {subscription.unit_size}"


class BotHandlers:
    """Telegram bot command handlers"""

    def __init__(self, db: Database):
        self.db = db

    async def start(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """Handle /start command - register user"""
        chat = update.effective_chat
        self.db.add_user(
            chat.id,
            username=chat.username,
            first_name=chat.first_name,
            last_name=chat.last_name,
        )
        context.user_data.clear()

        await update.message.reply_text(
            "👋 Добро пожаловать!\n\n"
            "Я слежу за свободными кладовками и пришлю сообщение, "
            "когда освободится бокс нужного размера.\n\n"
            "Что вы хотите сделать?",
            reply_markup=main_menu()
        )

    async def help(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """Handle /help command"""
        await update.message.reply_text(
            "📖 Помощь\n\n"
            "⚡ Для начала отправьте /start\n\n"
            "/subscribe - новая подписка (город → склад → размер)\n"
            "/list - мои подписки, там же можно отписаться\n"
            "/stats - статистика\n\n"
            "Уведомление приходит не чаще раза в сутки, "
            "пока по подписке есть свободные боксы.\n\n"
            f"⚠️ Не больше {MAX_SUBSCRIPTIONS_PER_USER} подписок на пользователя"
        )

    @require_registration
    async def new_subscription(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """Handle /subscribe and the main menu button - choose a city"""
        text, keyboard = self._build_city_message(context)
        await update.effective_message.reply_text(text, reply_markup=keyboard)

    def _build_city_message(self, context: ContextTypes.DEFAULT_TYPE) -> Tuple[str, Optional[InlineKeyboardMarkup]]:
        cities = self.db.get_cities()
        context.user_data.clear()
        if not cities:
            return "📭 Каталог пока пуст, попробуйте позже", None
        context.user_data["cities"] = cities
        return "🏙 Выберите город:", _choice_keyboard("city", cities, "sub_cancel")

    def _build_storage_message(self, context: ContextTypes.DEFAULT_TYPE, city: str) -> Tuple[str, InlineKeyboardMarkup]:
        storages = self.db.get_storages_by_city(city)
        context.user_data["city"] = city
        context.user_data["storages"] = storages
        return f"🏢 {city}\n\nВыберите склад:", _choice_keyboard("storage", storages, "sub_back_city")

    def _build_size_message(self, context: ContextTypes.DEFAULT_TYPE, storage_name: str) -> Tuple[str, InlineKeyboardMarkup]:
        city = context.user_data["city"]
        sizes = self.db.get_sizes_by_storage(city, storage_name)
        context.user_data["storage"] = storage_name
        context.user_data["sizes"] = sizes
        return (
            f"🏢 {city}, {storage_name}\n\nВыберите размер бокса:",
            _choice_keyboard("size", sizes, "sub_back_storage")
        )

    def _create_subscription(self, chat_id: int, context: ContextTypes.DEFAULT_TYPE, size: str) -> str:
        user = self.db.get_user_by_telegram_id(chat_id)
        if user is None:
            return "👋 Вы ещё не зарегистрированы, отправьте /start"

        city = context.user_data["city"]
        storage_name = context.user_data["storage"]
        context.user_data.clear()

        active = self.db.get_user_subscriptions(user.id)
        if any(s.key == (city, storage_name, size) for s in active):
            return f"⚠️ Вы уже подписаны: {city}, {storage_name}, {size}"

        if len(active) >= MAX_SUBSCRIPTIONS_PER_USER:
            return (
                f"❌ Достигнут лимит подписок ({MAX_SUBSCRIPTIONS_PER_USER})\n\n"
                "Удалите лишние в /list"
            )

        subscription = self.db.add_subscription(user.id, city, storage_name, size)
        if subscription is None:
            return f"⚠️ Вы уже подписаны: {city}, {storage_name}, {size}"
        logger.info(f"User {user.id} subscribed #{subscription.id}: {_describe(subscription)}")
        return f"✅ Подписка оформлена: {_describe(subscription)}"

    def _build_subscription_list_message(self, chat_id: int) -> Tuple[str, Optional[InlineKeyboardMarkup]]:
        """Build subscription list message with inline keyboard"""
        user = self.db.get_user_by_telegram_id(chat_id)
        subscriptions = self.db.get_user_subscriptions(user.id) if user else []

        if not subscriptions:
            return (
                "📭 У вас нет активных подписок\n\n"
                "Оформить: /subscribe"
            ), None

        lines = [f"📋 Ваши подписки ({len(subscriptions)}/{MAX_SUBSCRIPTIONS_PER_USER}):"]
        keyboard = []
        for subscription in subscriptions:
            display = _describe(subscription)
            if len(display) > 40:
                display = display[:37] + "..."
            keyboard.append([
                InlineKeyboardButton(f"• {display}", callback_data="noop"),
                InlineKeyboardButton("❌", callback_data=f"del_sub:{subscription.id}")
            ])
        return "\n".join(lines), InlineKeyboardMarkup(keyboard)

    @require_registration
    async def list_subscriptions(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """Handle /list command"""
        text, keyboard = self._build_subscription_list_message(update.effective_chat.id)
        await update.effective_message.reply_text(text, reply_markup=keyboard)

    @require_registration
    async def stats(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """Handle /stats command"""
        stats = self.db.get_stats()

        await update.message.reply_text(
            "📊 Статистика\n\n"
            f"👥 Пользователей: {stats['user_count']}\n"
            f"📦 Боксов в каталоге: {stats['unit_count']}\n"
            f"🟢 Свободно: {stats['available_unit_count']}\n"
            f"🔔 Активных подписок: {stats['active_subscription_count']}"
        )

    async def unknown_command(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """Handle unknown commands"""
        await update.message.reply_text(
            "❌ Неизвестная команда\n\n"
            "Список команд: /help"
        )

    async def unknown_message(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """Handle unknown text messages"""
        await update.message.reply_text(
            "❓ Не понимаю сообщение, воспользуйтесь меню",
            reply_markup=main_menu()
        )

    def _pick(self, context: ContextTypes.DEFAULT_TYPE, key: str, data: str) -> Optional[str]:
        """Resolve an index from callback data against the options shown earlier"""
        options = context.user_data.get(key)
        try:
            index = int(data.split(":", 1)[1])
        except (IndexError, ValueError):
            return None
        if not options or not 0 <= index < len(options):
            return None
        return options[index]

    async def handle_callback(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """Handle inline keyboard button callbacks"""
        query = update.callback_query
        await query.answer()

        data = query.data or ""
        if data == "noop":
            return

        chat_id = query.message.chat_id

        # Subscription dialog: city -> storage -> size
        if data.startswith("city:"):
            city = self._pick(context, "cities", data)
            if city is None:
                await query.edit_message_text(EXPIRED_MESSAGE)
                return
            text, keyboard = self._build_storage_message(context, city)
            await query.edit_message_text(text, reply_markup=keyboard)

        elif data.startswith("storage:"):
            storage_name = self._pick(context, "storages", data)
            if storage_name is None or "city" not in context.user_data:
                await query.edit_message_text(EXPIRED_MESSAGE)
                return
            text, keyboard = self._build_size_message(context, storage_name)
            await query.edit_message_text(text, reply_markup=keyboard)

        elif data.startswith("size:"):
            size = self._pick(context, "sizes", data)
            if size is None or "storage" not in context.user_data:
                await query.edit_message_text(EXPIRED_MESSAGE)
                return
            await query.edit_message_text(self._create_subscription(chat_id, context, size))

        elif data == "sub_back_city":
            text, keyboard = self._build_city_message(context)
            await query.edit_message_text(text, reply_markup=keyboard)

        elif data == "sub_back_storage":
            city = context.user_data.get("city")
            if city is None:
                await query.edit_message_text(EXPIRED_MESSAGE)
                return
            text, keyboard = self._build_storage_message(context, city)
            await query.edit_message_text(text, reply_markup=keyboard)

        elif data == "sub_cancel":
            context.user_data.clear()
            await query.edit_message_text("Возвращаемся в главное меню")

        # Unsubscribe with confirmation
        elif data.startswith("del_sub:"):
            user = self.db.get_user_by_telegram_id(chat_id)
            subscription = None
            if user and data[8:].isdigit():
                subscription = self.db.get_subscription(int(data[8:]), user_id=user.id)
            if subscription is None or not subscription.is_active:
                text, keyboard = self._build_subscription_list_message(chat_id)
                await query.edit_message_text(text, reply_markup=keyboard)
                return
            keyboard = InlineKeyboardMarkup([
                [
                    InlineKeyboardButton("✅ Удалить", callback_data=f"confirm_sub:{subscription.id}"),
                    InlineKeyboardButton("❌ Отмена", callback_data="cancel_sub")
                ]
            ])
            await query.edit_message_text(
                f"Удалить подписку «{_describe(subscription)}»?", reply_markup=keyboard
            )

        elif data.startswith("confirm_sub:"):
            subscription_id = int(data[12:])
            user = self.db.get_user_by_telegram_id(chat_id)
            if user and self.db.deactivate_subscription(user.id, subscription_id):
                logger.info(f"User {user.id} unsubscribed #{subscription_id}")
            text, keyboard = self._build_subscription_list_message(chat_id)
            await query.edit_message_text(text, reply_markup=keyboard)

        elif data == "cancel_sub":
            text, keyboard = self._build_subscription_list_message(chat_id)
            await query.edit_message_text(text, reply_markup=keyboard)

    async def on_error(self, update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
        """Log handler errors and reply with a short message"""
        logger.error(f"❌ Update handling failed: {context.error}", exc_info=context.error)
        if isinstance(update, Update) and update.effective_message:
            try:
                await update.effective_message.reply_text(ERROR_MESSAGE)
            except Exception as e:
                logger.error(f"Failed to send error reply: {e}")
