import logging
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

from ..models import Match, Subscription, User
from ..store import UnitCatalog

logger = logging.getLogger(__name__)

DEFAULT_COOLDOWN = timedelta(hours=24)


class SubscriptionMatcher:
    """Matches subscriptions against the unit catalog and applies the cooldown

    - A subscription is satisfied when the catalog holds a unit with the same
      (city, storage, size) and that unit is available.
    - A user is due when never notified, or notified at least ``cooldown`` ago.
    """

    def __init__(self, catalog: UnitCatalog, cooldown: timedelta = DEFAULT_COOLDOWN):
        self.catalog = catalog
        self.cooldown = cooldown

    def match(self, subscription: Subscription) -> Optional[Match]:
        """Return the match for one subscription, or None"""
        if not subscription.is_active:
            return None
        unit = self.catalog.find_unit(*subscription.key)
        if unit is None or not unit.available:
            return None
        return Match(subscription=subscription, unit=unit)

    def group_by_user(self, subscriptions: Iterable[Subscription]) -> Dict[int, List[Match]]:
        """Match all subscriptions and group the matches by user id.

        A catalog error on one subscription is logged and that subscription
        is skipped.
        """
        grouped: Dict[int, List[Match]] = {}
        for subscription in subscriptions:
            try:
                found = self.match(subscription)
            except Exception as e:
                logger.error(f"❌ Failed to match subscription {subscription.id} (user {subscription.user_id}): {e}")
                continue
            if found:
                grouped.setdefault(subscription.user_id, []).append(found)
        return grouped

    def is_due(self, user: User, now: datetime) -> bool:
        """Check the notification cooldown of a user"""
        if user.last_notified is None:
            return True
        return now - user.last_notified >= self.cooldown
