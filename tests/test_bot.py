"""
Тесты Telegram-части: повторная отправка и диалог подписки.
"""

import asyncio
from types import SimpleNamespace

import pytest
from telegram.error import BadRequest, Forbidden, NetworkError, TimedOut

from conftest import make_record
from kladovkin_bot.bot import TelegramBot
from kladovkin_bot.bot.handlers import MAX_SUBSCRIPTIONS_PER_USER, BotHandlers
from kladovkin_bot.database import Database


class FakeTelegram:
    """Fails with the queued errors, then succeeds"""

    def __init__(self, errors=()):
        self.errors = list(errors)
        self.calls = []

    async def send_message(self, **kwargs):
        self.calls.append(kwargs)
        if self.errors:
            raise self.errors.pop(0)


def make_bot(errors=()):
    bot = TelegramBot("123:abc", db=None, retry_delay=0)
    fake = FakeTelegram(errors)
    bot.application = SimpleNamespace(bot=fake)
    return bot, fake


def test_send_notification_ok():
    bot, fake = make_bot()

    assert asyncio.run(bot.send_notification(1001, "<b>hi</b>")) is True
    assert fake.calls[0]["chat_id"] == 1001
    assert fake.calls[0]["parse_mode"] == "HTML"


def test_retry_on_timeout():
    bot, fake = make_bot([TimedOut(), NetworkError("reset")])

    assert asyncio.run(bot.send_notification(1001, "hi")) is True
    assert len(fake.calls) == 3


def test_gives_up_after_three_attempts():
    bot, fake = make_bot([TimedOut(), TimedOut(), TimedOut(), TimedOut()])

    assert asyncio.run(bot.send_notification(1001, "hi")) is False
    assert len(fake.calls) == 3


@pytest.mark.parametrize("error", [
    Forbidden("bot was blocked by the user"),
    BadRequest("chat not found"),
    BadRequest("Message is too long"),
])
def test_no_retry_on_other_errors(error):
    bot, fake = make_bot([error])

    assert asyncio.run(bot.send_notification(1001, "hi")) is False
    assert len(fake.calls) == 1


def test_admin_alert_is_escaped():
    bot, fake = make_bot()

    asyncio.run(bot.send_admin_alert(1, "error: <html> & co"))

    assert "&lt;html&gt; &amp; co" in fake.calls[0]["text"]


def test_send_before_setup_fails():
    bot = TelegramBot("123:abc", db=None)

    with pytest.raises(RuntimeError):
        asyncio.run(bot.send_notification(1, "hi"))


# Dialog

class FakeQuery:
    def __init__(self, data, chat_id):
        self.data = data
        self.message = SimpleNamespace(chat_id=chat_id)
        self.edits = []

    async def answer(self):
        pass

    async def edit_message_text(self, text, reply_markup=None):
        self.edits.append((text, reply_markup))


@pytest.fixture
def db(tmp_path):
    db = Database(tmp_path / "data.db")
    db.upsert_unit(make_record(size="S"))
    db.upsert_unit(make_record(size="M"))
    db.upsert_unit(make_record(city="Казань", storage_name="Кладовкин Центр", size="L"))
    return db


@pytest.fixture
def handlers(db):
    return BotHandlers(db)


def click(handlers, context, data, chat_id=555):
    query = FakeQuery(data, chat_id)
    update = SimpleNamespace(callback_query=query)
    asyncio.run(handlers.handle_callback(update, context))
    return query.edits[-1] if query.edits else None


def buttons(markup):
    return [row[0].text for row in markup.inline_keyboard]


def test_subscription_dialog(handlers, db):
    user = db.add_user(555)
    context = SimpleNamespace(user_data={})

    text, markup = handlers._build_city_message(context)
    assert buttons(markup)[:2] == ["Казань", "Москва"]

    text, markup = click(handlers, context, "city:1")
    assert "Москва" in text
    assert buttons(markup)[0] == "Кладовкин на Ленинском"

    text, markup = click(handlers, context, "storage:0")
    assert buttons(markup)[:2] == ["M", "S"]

    text, _ = click(handlers, context, "size:1")
    assert text.startswith("✅")

    subscriptions = db.get_user_subscriptions(user.id)
    assert [s.key for s in subscriptions] == [("Москва", "Кладовкин на Ленинском", "S")]
    assert context.user_data == {}


def test_duplicate_subscription(handlers, db):
    user = db.add_user(555)
    db.add_subscription(user.id, "Москва", "Кладовкин на Ленинском", "S")
    context = SimpleNamespace(user_data={"city": "Москва", "storage": "Кладовкин на Ленинском"})

    assert handlers._create_subscription(555, context, "S").startswith("⚠️")
    assert len(db.get_user_subscriptions(user.id)) == 1


def test_subscription_limit(handlers, db):
    user = db.add_user(555)
    for i in range(MAX_SUBSCRIPTIONS_PER_USER):
        db.add_subscription(user.id, "Москва", "Кладовкин на Ленинском", f"size-{i}")
    context = SimpleNamespace(user_data={"city": "Москва", "storage": "Кладовкин на Ленинском"})

    assert handlers._create_subscription(555, context, "S").startswith("❌")
    assert len(db.get_user_subscriptions(user.id)) == MAX_SUBSCRIPTIONS_PER_USER


def test_expired_choice(handlers, db):
    db.add_user(555)
    context = SimpleNamespace(user_data={})

    text, _ = click(handlers, context, "city:0")

    assert text.startswith("⌛")


def test_unsubscribe_with_confirmation(handlers, db):
    user = db.add_user(555)
    sub = db.add_subscription(user.id, "Москва", "Кладовкин на Ленинском", "S")
    context = SimpleNamespace(user_data={})

    text, markup = click(handlers, context, f"del_sub:{sub.id}")
    assert "Кладовкин на Ленинском" in text
    assert markup.inline_keyboard[0][0].callback_data == f"confirm_sub:{sub.id}"
    assert db.get_subscription(sub.id).is_active

    text, markup = click(handlers, context, f"confirm_sub:{sub.id}")
    assert not db.get_subscription(sub.id).is_active
    assert markup is None


def test_start_registers_user(handlers, db):
    replies = []

    async def reply_text(text, reply_markup=None):
        replies.append(text)

    chat = SimpleNamespace(id=777, username="ivan", first_name="Иван", last_name=None)
    update = SimpleNamespace(effective_chat=chat, message=SimpleNamespace(reply_text=reply_text))
    context = SimpleNamespace(user_data={"city": "stale"})

    asyncio.run(handlers.start(update, context))

    assert db.user_exists(777)
    assert context.user_data == {}
    assert len(replies) == 1


def test_duplicate_at_limit_reports_duplicate(handlers, db):
    user = db.add_user(555)
    db.add_subscription(user.id, "Москва", "Кладовкин на Ленинском", "S")
    for i in range(MAX_SUBSCRIPTIONS_PER_USER - 1):
        db.add_subscription(user.id, "Москва", "Кладовкин на Ленинском", f"size-{i}")
    context = SimpleNamespace(user_data={"city": "Москва", "storage": "Кладовкин на Ленинском"})

    assert handlers._create_subscription(555, context, "S").startswith("⚠️")


def test_cannot_see_foreign_subscription(handlers, db):
    owner = db.add_user(1)
    db.add_user(555)
    sub = db.add_subscription(owner.id, "Казань", "Кладовкин Центр", "L")
    context = SimpleNamespace(user_data={})

    text, markup = click(handlers, context, f"del_sub:{sub.id}", chat_id=555)

    assert "Кладовкин Центр" not in text
    assert markup is None
    assert db.get_subscription(sub.id).is_active


def test_malformed_delete_callback(handlers, db):
    db.add_user(555)
    context = SimpleNamespace(user_data={})

    text, _ = click(handlers, context, "del_sub:abc")

    assert text.startswith("📭")
