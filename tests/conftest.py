"""
Общие фикстуры: хранилища в памяти и фейковый канал отправки.
"""

from datetime import datetime
from typing import Dict, List, Optional, Tuple

import pytest

from kladovkin_bot.errors import StoreError
from kladovkin_bot.models import Subscription, SubscriptionStatus, Unit, UnitRecord, User
from kladovkin_bot.store import SubscriptionStore, UnitCatalog

NOW = datetime(2024, 6, 1, 12, 0, 0)


class FakeCatalog(UnitCatalog):
    def __init__(self):
        self.units: Dict[Tuple[str, str, str], Unit] = {}
        self.fail_keys = set()
        self._next_id = 1

    def upsert_unit(self, record: UnitRecord) -> Unit:
        if record.key in self.fail_keys:
            raise StoreError(f"cannot save {record.key}")
        existing = self.units.get(record.key)
        unit = Unit(
            id=existing.id if existing else self._next_id,
            city=record.city,
            storage_name=record.storage_name,
            size=record.size,
            dimension=record.dimension,
            price=record.price,
            available=record.available,
            description=record.description,
            created_at=existing.created_at if existing else NOW,
            updated_at=NOW,
        )
        if not existing:
            self._next_id += 1
        self.units[record.key] = unit
        return unit

    def find_unit(self, city: str, storage_name: str, size: str) -> Optional[Unit]:
        return self.units.get((city, storage_name, size))

    def all_units(self) -> List[Unit]:
        return list(self.units.values())


class FakeStore(SubscriptionStore):
    def __init__(self):
        self.users: Dict[int, User] = {}
        self.subscriptions: List[Subscription] = []
        self.fail_update_for = set()

    def add_user(self, user_id: int, last_notified: Optional[datetime] = None) -> User:
        user = User(id=user_id, telegram_id=1000 + user_id, last_notified=last_notified)
        self.users[user_id] = user
        return user

    def subscribe(self, user_id: int, city: str, storage_name: str, unit_size: str,
                  status: SubscriptionStatus = SubscriptionStatus.ACTIVE) -> Subscription:
        subscription = Subscription(
            id=len(self.subscriptions) + 1,
            user_id=user_id,
            city=city,
            storage_name=storage_name,
            unit_size=unit_size,
            status=status,
        )
        self.subscriptions.append(subscription)
        return subscription

    def active_subscriptions(self) -> List[Subscription]:
        return [s for s in self.subscriptions if s.is_active]

    def get_user(self, user_id: int) -> Optional[User]:
        return self.users.get(user_id)

    def update_user_last_notified(self, user_id: int, timestamp: datetime) -> None:
        if user_id in self.fail_update_for:
            raise StoreError(f"cannot update user {user_id}")
        self.users[user_id].last_notified = timestamp


class FakeSink:
    """Records sent messages; chats in ``fail_chats`` fail, in ``raise_chats`` raise"""

    def __init__(self):
        self.sent: List[Tuple[int, str]] = []
        self.fail_chats = set()
        self.raise_chats = set()

    async def send_notification(self, chat_id: int, text: str) -> bool:
        if chat_id in self.raise_chats:
            raise RuntimeError("network down")
        if chat_id in self.fail_chats:
            return False
        self.sent.append((chat_id, text))
        return True

    def chats(self) -> List[int]:
        return [chat_id for chat_id, _ in self.sent]


def make_record(city="Москва", storage_name="Кладовкин на Ленинском", size="S",
                available=True, price=3500.0) -> UnitRecord:
    return UnitRecord(
        city=city,
        storage_name=storage_name,
        size=size,
        dimension="1x1x2",
        price=price,
        available=available,
        description="Тёплый бокс",
    )


@pytest.fixture
def catalog():
    return FakeCatalog()


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def sink():
    return FakeSink()
