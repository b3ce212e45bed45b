from app.models.usage import Subscription, UsageRecord

__all__ = ["Subscription", "UsageRecord"]
