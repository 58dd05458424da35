"""Tools that finish inside the request: JSON formatting, regex generation, image compression."""

import json
import re
from dataclasses import dataclass, field
from io import BytesIO

from PIL import Image

EMAIL_PATTERN = r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$"
PHONE_PATTERN = r"^\+?[\d\s\-\(\)]{10,}$"
URL_PATTERN = r"^https?://[^\s/$.?#].[^\s]*$"
IP_ADDRESS_PATTERN = r"^(\d{1,3}\.){3}\d{1,3}$"
DATE_PATTERN = r"^\d{4}-\d{2}-\d{2}$"
NUMBER_PATTERN = r"^\d+$"
LETTERS_PATTERN = r"^[a-zA-Z]+$"
ALPHANUMERIC_PATTERN = r"^[a-zA-Z0-9]+$"
WHITESPACE_PATTERN = r"\s+"

# Checked in order; the first keyword found in the description wins.
KEYWORD_PATTERNS: tuple[tuple[tuple[str, ...], str], ...] = (
    (("email",), EMAIL_PATTERN),
    (("phone", "telephone"), PHONE_PATTERN),
    (("url", "website"), URL_PATTERN),
    (("ip address",), IP_ADDRESS_PATTERN),
    (("date",), DATE_PATTERN),
    (("number", "digit"), NUMBER_PATTERN),
    (("alphanumeric",), ALPHANUMERIC_PATTERN),
    (("whitespace", "space"), WHITESPACE_PATTERN),
)
SAMPLE_PATTERNS = (NUMBER_PATTERN, LETTERS_PATTERN, ALPHANUMERIC_PATTERN, DATE_PATTERN)
NEGATIVE_SAMPLES = ("test", "123", "")

EXPLANATIONS = (
    ("^", "`^` matches the start of the string"),
    ("$", "`$` matches the end of the string"),
    ("\\d", "`\\d` matches any digit (0-9)"),
    ("\\w", "`\\w` matches any word character (a-z, A-Z, 0-9, _)"),
    ("\\s", "`\\s` matches any whitespace character"),
    ("+", "`+` means one or more of the preceding element"),
    ("*", "`*` means zero or more of the preceding element"),
    ("?", "`?` means zero or one of the preceding element"),
    ("[", "`[]` defines a character class"),
    ("(", "`()` groups elements together"),
)

IMAGE_FORMATS = {
    "jpeg": ("JPEG", "image/jpeg", ".jpg"),
    "png": ("PNG", "image/png", ".png"),
    "webp": ("WEBP", "image/webp", ".webp"),
}
FORMAT_ALIASES = {"jpg": "jpeg"}
CONTENT_TYPE_FORMATS = {
    "image/jpeg": "jpeg",
    "image/jpg": "jpeg",
    "image/png": "png",
    "image/webp": "webp",
}


def format_json(text: str, indent: bool = True, indent_size: int = 2) -> str:
    if not text or not text.strip():
        raise ValueError("JSON text is required")
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid JSON: {exc.msg} (line {exc.lineno}, column {exc.colno})") from exc
    if not indent:
        return json.dumps(parsed, ensure_ascii=False, separators=(",", ":"))
    return json.dumps(parsed, ensure_ascii=False, indent=indent_size)


@dataclass(slots=True)
class RegexTestCase:
    test_string: str
    should_match: bool
    actual_match: bool
    explanation: str | None = None


@dataclass(slots=True)
class RegexResult:
    pattern: str
    explanation: str
    tests: list[RegexTestCase] = field(default_factory=list)


def pattern_from_description(description: str, sample_text: str | None = None) -> str:
    lowered = description.lower()
    for keywords, pattern in KEYWORD_PATTERNS:
        if any(keyword in lowered for keyword in keywords):
            return pattern
    if sample_text and sample_text.strip():
        return infer_pattern_from_sample(sample_text)
    return re.escape(description)


def infer_pattern_from_sample(sample: str) -> str:
    for pattern in SAMPLE_PATTERNS:
        if re.search(pattern, sample):
            return pattern
    return f"^{re.escape(sample)}$"


def explain_pattern(pattern: str) -> str:
    lines = [f"Pattern: `{pattern}`", "", "Explanation:"]
    lines.extend(f"- {text}" for token, text in EXPLANATIONS if token in pattern)
    return "\n".join(lines)


def generate_regex(description: str, sample_text: str | None = None, examples: list[str] | None = None) -> RegexResult:
    pattern = pattern_from_description(description, sample_text)
    compiled = re.compile(pattern)
    tests = []
    if sample_text and sample_text.strip():
        matched = compiled.search(sample_text) is not None
        tests.append(
            RegexTestCase(
                test_string=sample_text,
                should_match=True,
                actual_match=matched,
                explanation="Matches the sample text" if matched else "Does not match the sample text",
            )
        )
    for example in examples or []:
        tests.append(RegexTestCase(test_string=example, should_match=True, actual_match=compiled.search(example) is not None))
    for sample in NEGATIVE_SAMPLES:
        tests.append(RegexTestCase(test_string=sample, should_match=False, actual_match=compiled.search(sample) is not None))
    return RegexResult(pattern=pattern, explanation=explain_pattern(pattern), tests=tests)


@dataclass(slots=True)
class CompressedImage:
    data: bytes
    content_type: str
    extension: str
    width: int
    height: int


def resolve_image_format(target_format: str | None, source_content_type: str | None) -> str:
    if target_format:
        name = FORMAT_ALIASES.get(target_format.lower(), target_format.lower())
        if name not in IMAGE_FORMATS:
            raise ValueError(f"Unsupported target format: {target_format}. Supported: jpg, png, webp")
        return name
    # GIF and anything unknown become JPEG.
    return CONTENT_TYPE_FORMATS.get((source_content_type or "").lower(), "jpeg")


def compress_image(
    data: bytes,
    quality: int = 80,
    target_format: str | None = None,
    max_width: int | None = None,
    max_height: int | None = None,
    source_content_type: str | None = None,
) -> CompressedImage:
    format_name = resolve_image_format(target_format, source_content_type)
    pil_format, content_type, extension = IMAGE_FORMATS[format_name]
    with Image.open(BytesIO(data)) as source:
        image = source.copy()
    if max_width or max_height:
        image.thumbnail((max_width or image.width, max_height or image.height), Image.Resampling.LANCZOS)
    if pil_format == "JPEG" and image.mode not in ("RGB", "L"):
        image = image.convert("RGB")

    buffer = BytesIO()
    if pil_format == "PNG":
        image.save(buffer, format=pil_format, optimize=True)
    else:
        image.save(buffer, format=pil_format, quality=quality, optimize=pil_format == "JPEG")
    return CompressedImage(
        data=buffer.getvalue(),
        content_type=content_type,
        extension=extension,
        width=image.width,
        height=image.height,
    )
