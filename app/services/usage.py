from decimal import Decimal

from sqlalchemy.orm import Session

from app.models.enums import ToolType
from app.models.usage import UsageRecord

# Rough chat-completion pricing used for the usage ledger only.
COST_PER_1K_TOKENS = Decimal("0.0006")


def estimate_cost(tokens_used: int) -> Decimal:
    return (Decimal(tokens_used) / Decimal(1000)) * COST_PER_1K_TOKENS


def record_usage(
    db: Session,
    user_id: str | None,
    tool_type: ToolType,
    file_size_bytes: int,
    processing_time_ms: int,
    tokens_used: int = 0,
    job_id: str | None = None,
    metadata: dict | None = None,
) -> UsageRecord | None:
    if user_id is None:
        return None
    record = UsageRecord(
        user_id=user_id,
        tool_type=tool_type,
        file_size_bytes=file_size_bytes,
        processing_time_ms=max(processing_time_ms, 0),
        tokens_used=tokens_used,
        cost=estimate_cost(tokens_used),
        job_id=job_id,
        metadata_json=metadata or {},
    )
    db.add(record)
    return record
