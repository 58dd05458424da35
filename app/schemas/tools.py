from typing import Literal

from pydantic import AliasChoices, BaseModel, Field


class FileResultResponse(BaseModel):
    file_key: str
    download_url: str
    file_name: str
    content_type: str
    size_bytes: int


class PdfMergeResponse(FileResultResponse):
    file_count: int
    page_count: int


class PdfSplitResponse(FileResultResponse):
    page_count: int
    files_created: int


class ExcelCleanOptions(BaseModel):
    remove_empty_rows: bool = True
    remove_empty_columns: bool = True
    trim_whitespace: bool = True
    remove_duplicates: bool = False
    standardize_formats: bool = True
    output_format: Literal["xlsx", "csv"] | None = None


class ExcelCleanResponse(FileResultResponse):
    original_size_bytes: int
    rows_removed: int
    columns_removed: int
    duplicates_removed: int
    row_count: int
    column_count: int


class ImageCompressResponse(FileResultResponse):
    original_size_bytes: int
    compression_ratio: float
    width: int
    height: int


class FormatJsonRequest(BaseModel):
    json_text: str = Field(default="", validation_alias=AliasChoices("json", "text", "json_text"))
    indent: bool = True
    indent_size: int = Field(default=2, ge=0, le=8)


class FormatJsonResponse(BaseModel):
    formatted_json: str
    is_valid: bool = True


class GenerateRegexRequest(BaseModel):
    description: str = Field(min_length=1, max_length=500)
    sample_text: str | None = Field(default=None, max_length=1000)
    examples: list[str] | None = Field(default=None, max_length=20)


class RegexTestRead(BaseModel):
    test_string: str
    should_match: bool
    actual_match: bool
    explanation: str | None = None


class GenerateRegexResponse(BaseModel):
    pattern: str
    explanation: str
    tests: list[RegexTestRead]

    model_config = {"from_attributes": True}
