import logging
from datetime import datetime, timezone

from app.models.enums import SubscriptionTier, ToolType
from app.models.user import User

logger = logging.getLogger(__name__)

REQUIRED_TIERS: dict[ToolType, SubscriptionTier] = {
    ToolType.IMAGE_REMOVE_BACKGROUND: SubscriptionTier.PRO,
}


def required_tier_for(tool_type: ToolType) -> SubscriptionTier:
    return REQUIRED_TIERS.get(tool_type, SubscriptionTier.FREE)


def effective_tier(user: User, now: datetime | None = None) -> SubscriptionTier:
    tier = SubscriptionTier(user.subscription_tier)
    if tier == SubscriptionTier.ADMIN:
        return tier
    expires_at = user.subscription_expires_at
    if expires_at is not None:
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        if expires_at < (now or datetime.now(timezone.utc)):
            logger.info("subscription_expired", extra={"user_id": user.id, "expired_at": expires_at.isoformat()})
            return SubscriptionTier.FREE
    return tier


def has_required_tier(user: User | None, tool_type: ToolType, now: datetime | None = None) -> bool:
    required = required_tier_for(tool_type)
    if required == SubscriptionTier.FREE:
        return True
    if user is None:
        return False
    return effective_tier(user, now) >= required
