from app.models.enums import JobStatus, SubscriptionTier, ToolType
from app.models.job import InvalidJobTransition, Job
from app.models.outbox import OutboxEntry
from app.models.usage import UsageRecord
from app.models.user import User

__all__ = [
    "User",
    "Job",
    "UsageRecord",
    "OutboxEntry",
    "JobStatus",
    "ToolType",
    "SubscriptionTier",
    "InvalidJobTransition",
]
