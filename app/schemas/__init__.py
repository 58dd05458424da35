from app.schemas.auth import LoginRequest, TokenResponse, UserCreate, UserRead
from app.schemas.job import JobStatusResponse, JobSubmitResponse
from app.schemas.tools import (
    FileResultResponse,
    FormatJsonRequest,
    FormatJsonResponse,
    GenerateRegexRequest,
    GenerateRegexResponse,
    ImageCompressResponse,
    PdfMergeResponse,
)

__all__ = [
    "UserCreate",
    "UserRead",
    "LoginRequest",
    "TokenResponse",
    "JobStatusResponse",
    "JobSubmitResponse",
    "FileResultResponse",
    "PdfMergeResponse",
    "ImageCompressResponse",
    "FormatJsonRequest",
    "FormatJsonResponse",
    "GenerateRegexRequest",
    "GenerateRegexResponse",
]
