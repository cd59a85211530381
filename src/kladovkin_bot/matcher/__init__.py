from .subscription import DEFAULT_COOLDOWN, SubscriptionMatcher

__all__ = ["DEFAULT_COOLDOWN", "SubscriptionMatcher"]
