from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

from .models import Subscription, Unit, UnitRecord, User


class UnitCatalog(ABC):
    """Latest known state of storage units, keyed by (city, storage, size)"""

    @abstractmethod
    def upsert_unit(self, record: UnitRecord) -> Unit:
        """Insert a unit or overwrite the mutable fields of an existing one.

        The surrogate id of an existing unit is preserved.
        """
        pass

    @abstractmethod
    def find_unit(self, city: str, storage_name: str, size: str) -> Optional[Unit]:
        """Find a unit by its natural key"""
        pass

    @abstractmethod
    def all_units(self) -> List[Unit]:
        """Return every known unit"""
        pass


class SubscriptionStore(ABC):
    """Users and their subscriptions"""

    @abstractmethod
    def active_subscriptions(self) -> List[Subscription]:
        """Return subscriptions with status active"""
        pass

    @abstractmethod
    def get_user(self, user_id: int) -> Optional[User]:
        """Get user by internal id"""
        pass

    @abstractmethod
    def update_user_last_notified(self, user_id: int, timestamp: datetime) -> None:
        """Record the time of the last successful notification"""
        pass
