"""Spreadsheet cleanup for the Excel clean tool.

Sheets are read into a plain grid of cell values (the first worksheet of an
``.xlsx`` workbook, or every record of a CSV file), cleaned, and written back
as ``.xlsx`` or CSV.
"""

import csv
import logging
from dataclasses import dataclass
from datetime import date, datetime
from io import BytesIO, StringIO
from pathlib import Path
from zipfile import BadZipFile

from openpyxl import Workbook, load_workbook
from openpyxl.utils.exceptions import InvalidFileException

logger = logging.getLogger(__name__)

XLSX_CONTENT_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
CSV_CONTENT_TYPE = "text/csv"
CSV_CONTENT_TYPES = {"text/csv", "application/csv"}
DATE_FORMAT = "yyyy-mm-dd"

# Tried in order, so month-first wins for ambiguous values such as 03/04/2024.
DATE_INPUT_FORMATS = (
    "%Y-%m-%d",
    "%Y/%m/%d",
    "%m/%d/%Y",
    "%d.%m.%Y",
    "%d-%m-%Y",
    "%b %d, %Y",
    "%B %d, %Y",
    "%d %b %Y",
    "%d %B %Y",
)


class SpreadsheetError(ValueError):
    pass


@dataclass(slots=True)
class CleanResult:
    data: bytes
    content_type: str
    extension: str
    rows_removed: int
    columns_removed: int
    duplicates_removed: int
    row_count: int
    column_count: int


def is_csv(file_name: str, content_type: str | None = None) -> bool:
    return Path(file_name).suffix.lower() == ".csv" or (content_type or "").lower() in CSV_CONTENT_TYPES


def read_grid(data: bytes, file_name: str, content_type: str | None = None) -> tuple[list[list], str]:
    """Return ``(rows, sheet_title)`` for an uploaded CSV or ``.xlsx`` file."""
    if is_csv(file_name, content_type):
        try:
            text = data.decode("utf-8-sig")
        except UnicodeDecodeError as exc:
            raise SpreadsheetError("CSV files must be UTF-8 encoded") from exc
        rows = [row for row in csv.reader(StringIO(text)) if row]
        return _pad(rows), "Sheet1"

    try:
        workbook = load_workbook(BytesIO(data), read_only=True)
    except (InvalidFileException, BadZipFile, KeyError, OSError) as exc:
        raise SpreadsheetError(f"Could not read spreadsheet: {exc}") from exc
    try:
        if not workbook.worksheets:
            raise SpreadsheetError("Workbook must contain at least one worksheet")
        sheet = workbook.worksheets[0]
        rows = [list(row) for row in sheet.iter_rows(values_only=True)]
        title = sheet.title
    finally:
        workbook.close()
    return _pad(rows), title


def _pad(rows: list[list]) -> list[list]:
    width = max((len(row) for row in rows), default=0)
    return [list(row) + [None] * (width - len(row)) for row in rows]


def _is_blank(value) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _is_formula(value) -> bool:
    return isinstance(value, str) and value.startswith("=")


def parse_date(value: str) -> date | None:
    text = value.strip()
    for fmt in DATE_INPUT_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def trim_whitespace(rows: list[list]) -> None:
    for row in rows:
        for index, value in enumerate(row):
            if isinstance(value, str) and not _is_formula(value):
                row[index] = value.strip()


def standardize_formats(rows: list[list]) -> None:
    """Turn recognisable date strings into dates and drop midnight times from datetimes."""
    for row in rows:
        for index, value in enumerate(row):
            if isinstance(value, datetime):
                if value.time() == datetime.min.time():
                    row[index] = value.date()
            elif isinstance(value, str) and value.strip() and not _is_formula(value):
                parsed = parse_date(value)
                if parsed is not None:
                    row[index] = parsed


def _comparison_key(row: list) -> tuple:
    key = []
    for value in row:
        if isinstance(value, datetime):
            value = value.date()
        if isinstance(value, date):
            key.append(value.isoformat())
        elif value is None:
            key.append("")
        else:
            text = str(value).strip()
            parsed = parse_date(text)
            key.append(parsed.isoformat() if parsed else text.lower())
    return tuple(key)


def remove_duplicates(rows: list[list]) -> int:
    seen: set[tuple] = set()
    kept: list[list] = []
    removed = 0
    for row in rows:
        if all(_is_blank(value) for value in row):
            kept.append(row)
            continue
        key = _comparison_key(row)
        if key in seen:
            removed += 1
            continue
        seen.add(key)
        kept.append(row)
    rows[:] = kept
    return removed


def remove_empty_rows(rows: list[list]) -> int:
    # The first row is the header and always stays.
    body = [row for row in rows[1:] if not all(_is_blank(value) for value in row)]
    removed = len(rows) - 1 - len(body) if rows else 0
    rows[1:] = body
    return removed


def remove_empty_columns(rows: list[list]) -> int:
    if not rows:
        return 0
    width = len(rows[0])
    keep = [col for col in range(width) if any(not _is_blank(row[col]) for row in rows)]
    for index, row in enumerate(rows):
        rows[index] = [row[col] for col in keep]
    return width - len(keep)


def write_xlsx(rows: list[list], title: str = "Sheet1") -> bytes:
    workbook = Workbook()
    sheet = workbook.active
    sheet.title = title
    for row in rows:
        sheet.append(row)
        for cell in sheet[sheet.max_row]:
            if isinstance(cell.value, (date, datetime)):
                cell.number_format = DATE_FORMAT
    buffer = BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


def _csv_value(value) -> str:
    if value is None:
        return ""
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return str(value)


def write_csv(rows: list[list]) -> bytes:
    buffer = StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    for row in rows:
        writer.writerow([_csv_value(value) for value in row])
    return buffer.getvalue().encode("utf-8")


def clean_spreadsheet(
    data: bytes,
    file_name: str,
    content_type: str | None = None,
    *,
    remove_empty_rows_enabled: bool = True,
    remove_empty_columns_enabled: bool = True,
    trim_whitespace_enabled: bool = True,
    remove_duplicates_enabled: bool = False,
    standardize_formats_enabled: bool = True,
    output_format: str | None = None,
) -> CleanResult:
    rows, title = read_grid(data, file_name, content_type)
    if not rows:
        raise SpreadsheetError("Spreadsheet has no data")

    if trim_whitespace_enabled:
        trim_whitespace(rows)
    if standardize_formats_enabled:
        standardize_formats(rows)
    duplicates = remove_duplicates(rows) if remove_duplicates_enabled else 0
    rows_removed = remove_empty_rows(rows) if remove_empty_rows_enabled else 0
    columns_removed = remove_empty_columns(rows) if remove_empty_columns_enabled else 0

    output_format = (output_format or ("csv" if is_csv(file_name, content_type) else "xlsx")).lower()
    if output_format == "csv":
        output, mime, extension = write_csv(rows), CSV_CONTENT_TYPE, ".csv"
    elif output_format == "xlsx":
        output, mime, extension = write_xlsx(rows, title), XLSX_CONTENT_TYPE, ".xlsx"
    else:
        raise SpreadsheetError(f"Unsupported output format: {output_format}")

    logger.debug(
        "spreadsheet_cleaned",
        extra={"rows_removed": rows_removed, "columns_removed": columns_removed, "duplicates_removed": duplicates},
    )
    return CleanResult(
        data=output,
        content_type=mime,
        extension=extension,
        rows_removed=rows_removed,
        columns_removed=columns_removed,
        duplicates_removed=duplicates,
        row_count=len(rows),
        column_count=len(rows[0]) if rows else 0,
    )
