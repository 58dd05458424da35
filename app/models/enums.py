import enum


class ToolType(enum.IntEnum):
    PDF_MERGE = 1
    PDF_SPLIT = 2
    IMAGE_COMPRESS = 3
    IMAGE_REMOVE_BACKGROUND = 4
    DOC_TO_PDF = 5
    EXCEL_CLEAN = 6
    AI_SUMMARIZE = 7
    JSON_FORMAT = 8
    REGEX_GENERATE = 9
    VIDEO_COMPRESS = 10

    @property
    def storage_folder(self) -> str:
        return _STORAGE_FOLDERS.get(self, self.name.lower().replace("_", "-"))


_STORAGE_FOLDERS = {
    ToolType.PDF_MERGE: "pdf/merged",
    ToolType.PDF_SPLIT: "pdf/split",
    ToolType.IMAGE_COMPRESS: "image/compressed",
    ToolType.IMAGE_REMOVE_BACKGROUND: "image/background-removal",
    ToolType.DOC_TO_PDF: "document/pdf",
    ToolType.EXCEL_CLEAN: "excel/clean",
    ToolType.AI_SUMMARIZE: "ai/summaries",
    ToolType.VIDEO_COMPRESS: "video",
}


class JobStatus(enum.IntEnum):
    PENDING = 0
    PROCESSING = 1
    COMPLETED = 2
    FAILED = 3
    CANCELLED = 4
    # Response-only sentinels, never persisted.
    NOT_FOUND = -1
    UNAUTHORIZED = -2

    @property
    def is_sentinel(self) -> bool:
        return self < 0

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)

    @property
    def label(self) -> str:
        return self.name.lower()


class SubscriptionTier(enum.IntEnum):
    FREE = 0
    BASIC = 1
    PRO = 2
    ENTERPRISE = 3
    ADMIN = 99
