from datetime import datetime

from pydantic import BaseModel
from sqlalchemy import JSON, DateTime, Enum, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base
from app.models.common import TimestampMixin, UUIDPrimaryKeyMixin, new_id, utcnow
from app.models.enums import JobStatus, ToolType
from app.schemas.options import (
    DocToPdfOptions,
    JobOptions,
    PdfMergeOptions,
    RemoveBackgroundOptions,
    SummarizeOptions,
    VideoCompressOptions,
    dump_options,
    load_options,
)

OPTIONS_BY_TOOL: dict[ToolType, type[BaseModel]] = {
    ToolType.VIDEO_COMPRESS: VideoCompressOptions,
    ToolType.DOC_TO_PDF: DocToPdfOptions,
    ToolType.IMAGE_REMOVE_BACKGROUND: RemoveBackgroundOptions,
    ToolType.AI_SUMMARIZE: SummarizeOptions,
    ToolType.PDF_MERGE: PdfMergeOptions,
}

_ALLOWED_TRANSITIONS: dict[JobStatus, set[JobStatus]] = {
    JobStatus.PENDING: {JobStatus.PROCESSING, JobStatus.FAILED, JobStatus.CANCELLED},
    JobStatus.PROCESSING: {JobStatus.PROCESSING, JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
    JobStatus.CANCELLED: set(),
}


class InvalidJobTransition(ValueError):
    def __init__(self, current: JobStatus, target: JobStatus) -> None:
        super().__init__(f"Cannot move job from {current.label} to {target.label}")
        self.current = current
        self.target = target


class Job(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    __tablename__ = "jobs"

    user_id: Mapped[str | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    tool_type: Mapped[ToolType] = mapped_column(Enum(ToolType, native_enum=False, length=32), nullable=False, index=True)
    status: Mapped[JobStatus] = mapped_column(
        Enum(JobStatus, native_enum=False, length=32), default=JobStatus.PENDING, nullable=False, index=True
    )
    input_file_key: Mapped[str | None] = mapped_column(String(500), nullable=True)
    output_file_key: Mapped[str | None] = mapped_column(String(500), nullable=True)
    parameters: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    progress_percentage: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    signed_download_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    signed_url_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    user = relationship("User", back_populates="jobs")

    def __init__(
        self,
        tool_type: ToolType,
        user_id: str | None = None,
        input_file_key: str | None = None,
        options: BaseModel | None = None,
        **kwargs,
    ) -> None:
        kwargs.setdefault("id", new_id())
        super().__init__(
            tool_type=tool_type,
            user_id=user_id,
            input_file_key=input_file_key,
            parameters=dump_options(options) if options is not None else {},
            status=JobStatus.PENDING,
            progress_percentage=0,
            attempts=0,
            **kwargs,
        )

    @property
    def options(self) -> JobOptions:
        return load_options(self.parameters, OPTIONS_BY_TOOL.get(self.tool_type))

    @property
    def input_file_keys(self) -> list[str]:
        keys = [self.input_file_key] if self.input_file_key else []
        for key in (self.parameters or {}).get("input_file_keys", []):
            if key not in keys:
                keys.append(key)
        return keys

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def _transition(self, target: JobStatus) -> None:
        if target.is_sentinel:
            raise InvalidJobTransition(self.status, target)
        if target not in _ALLOWED_TRANSITIONS[self.status]:
            raise InvalidJobTransition(self.status, target)
        self.status = target

    def start(self) -> None:
        self._transition(JobStatus.PROCESSING)
        self.attempts = (self.attempts or 0) + 1
        if self.started_at is None:
            self.started_at = utcnow()

    def complete(self, output_file_key: str, signed_download_url: str, url_expires_at: datetime) -> None:
        if not output_file_key or not signed_download_url:
            raise ValueError("A completed job needs an output key and a download URL")
        self._transition(JobStatus.COMPLETED)
        self.output_file_key = output_file_key
        self.signed_download_url = signed_download_url
        self.signed_url_expires_at = url_expires_at
        self.error_message = None
        self.progress_percentage = 100
        self.completed_at = utcnow()

    def fail(self, error_message: str) -> None:
        self._transition(JobStatus.FAILED)
        self.error_message = error_message or "Job failed"
        self.output_file_key = None
        self.signed_download_url = None
        self.signed_url_expires_at = None
        self.completed_at = utcnow()

    def cancel(self) -> None:
        self._transition(JobStatus.CANCELLED)
        self.completed_at = utcnow()

    def update_progress(self, percentage: int) -> None:
        clamped = min(max(int(percentage), 0), 100)
        self.progress_percentage = max(self.progress_percentage or 0, clamped)
