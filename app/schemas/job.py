from datetime import datetime

from pydantic import BaseModel


class JobStatusResponse(BaseModel):
    job_id: str
    status: int
    status_name: str
    tool_type: str | None = None
    progress_percentage: int = 0
    output_file_key: str | None = None
    download_url: str | None = None
    error_message: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    signed_url_expires_at: datetime | None = None


class JobSubmitResponse(BaseModel):
    job_id: str
    status: str = "pending"
    message: str = "Job queued for processing"
