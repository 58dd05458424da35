"""Typed per-tool job options.

Each async tool has its own options model. They share a ``tool`` discriminator
so a job's ``parameters`` JSON column can hold any of them and still be parsed
back into the right type. Legacy PascalCase keys (``Quality``, ``MaxWidth``)
are accepted on read.
"""

from typing import Annotated, Literal, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter, field_validator

VIDEO_PRESETS = ("ultrafast", "superfast", "veryfast", "faster", "fast", "medium", "slow", "slower", "veryslow")
VIDEO_CODECS = ("libx264", "libx265", "libvpx-vp9")
CRF_MIN = 18
CRF_MAX = 28


def _alias(*names: str) -> AliasChoices:
    return AliasChoices(*names)


class _OptionsBase(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    original_file_name: str | None = Field(
        default=None, validation_alias=_alias("original_file_name", "OriginalFileName")
    )
    original_size: int = Field(default=0, validation_alias=_alias("original_size", "OriginalSize"))


class VideoCompressOptions(_OptionsBase):
    tool: Literal["video_compress"] = "video_compress"
    quality: int = Field(default=23, validation_alias=_alias("quality", "Quality", "crf"))
    preset: str = Field(default="medium", validation_alias=_alias("preset", "Preset"))
    codec: str = Field(default="libx264", validation_alias=_alias("codec", "Codec"))
    max_width: int | None = Field(default=None, gt=0, validation_alias=_alias("max_width", "MaxWidth"))
    max_height: int | None = Field(default=None, gt=0, validation_alias=_alias("max_height", "MaxHeight"))
    bitrate_kbps: int | None = Field(default=None, gt=0, validation_alias=_alias("bitrate_kbps", "BitrateKbps"))

    @field_validator("preset", mode="before")
    @classmethod
    def _normalize_preset(cls, value: str | None) -> str:
        preset = (value or "medium").lower()
        if preset not in VIDEO_PRESETS:
            raise ValueError(f"Preset must be one of: {', '.join(VIDEO_PRESETS)}")
        return preset

    @field_validator("codec", mode="before")
    @classmethod
    def _normalize_codec(cls, value: str | None) -> str:
        codec = (value or "libx264").lower()
        if codec not in VIDEO_CODECS:
            raise ValueError(f"Codec must be one of: {', '.join(VIDEO_CODECS)}")
        return codec

    @property
    def crf(self) -> int:
        return min(max(self.quality, CRF_MIN), CRF_MAX)


class DocToPdfOptions(_OptionsBase):
    tool: Literal["doc_to_pdf"] = "doc_to_pdf"
    content_type: str | None = Field(default=None, validation_alias=_alias("content_type", "ContentType"))


class RemoveBackgroundOptions(_OptionsBase):
    tool: Literal["remove_background"] = "remove_background"
    transparent: bool = Field(default=True, validation_alias=_alias("transparent", "Transparent"))
    background_color: str | None = Field(
        default=None,
        pattern=r"^#[0-9A-Fa-f]{6}$",
        validation_alias=_alias("background_color", "BackgroundColor"),
    )


class SummarizeOptions(_OptionsBase):
    tool: Literal["ai_summarize"] = "ai_summarize"
    max_length: int = Field(default=200, ge=20, le=2000, validation_alias=_alias("max_length", "MaxLength"))
    tone: str | None = Field(default=None, max_length=40, validation_alias=_alias("tone", "Tone"))


class PdfMergeOptions(_OptionsBase):
    tool: Literal["pdf_merge"] = "pdf_merge"
    input_file_keys: list[str] = Field(default_factory=list, validation_alias=_alias("input_file_keys", "InputFileKeys"))


JobOptions = Annotated[
    Union[VideoCompressOptions, DocToPdfOptions, RemoveBackgroundOptions, SummarizeOptions, PdfMergeOptions],
    Field(discriminator="tool"),
]

_job_options_adapter = TypeAdapter(JobOptions)


def dump_options(options: BaseModel) -> dict:
    return options.model_dump(mode="json")


def load_options(parameters: dict | None, fallback: type[BaseModel] | None = None) -> JobOptions:
    """Parse a stored parameter map, tolerating payloads written without ``tool``."""
    payload = dict(parameters or {})
    if "tool" not in payload:
        if fallback is None:
            raise ValueError("Stored job parameters do not name their tool")
        return fallback.model_validate(payload)
    return _job_options_adapter.validate_python(payload)
