from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


class SubscriptionStatus(str, Enum):
    """Subscription status"""
    ACTIVE = "active"
    INACTIVE = "inactive"


@dataclass
class UnitRecord:
    """Storage unit as parsed from the listing page"""
    city: str
    storage_name: str
    size: str
    dimension: str = ""
    price: float = 0.0
    available: bool = True
    description: str = ""

    @property
    def key(self) -> tuple:
        return (self.city, self.storage_name, self.size)


@dataclass
class Unit:
    """Storage unit model"""
    id: Optional[int]
    city: str
    storage_name: str
    size: str
    dimension: str
    price: float
    available: bool
    description: str
    created_at: datetime
    updated_at: datetime

    @property
    def key(self) -> tuple:
        return (self.city, self.storage_name, self.size)


@dataclass
class User:
    """Telegram user model"""
    id: Optional[int]
    telegram_id: int
    username: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    last_notified: Optional[datetime] = None

    @property
    def display_name(self) -> str:
        name = " ".join(p for p in (self.first_name, self.last_name) if p)
        return name or self.username or str(self.telegram_id)


@dataclass
class Subscription:
    """User subscription model"""
    id: Optional[int]
    user_id: int
    city: str
    storage_name: str
    unit_size: str
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def key(self) -> tuple:
        return (self.city, self.storage_name, self.unit_size)

    @property
    def is_active(self) -> bool:
        return self.status == SubscriptionStatus.ACTIVE


@dataclass
class Match:
    """Active subscription satisfied by an available unit"""
    subscription: Subscription
    unit: Unit
