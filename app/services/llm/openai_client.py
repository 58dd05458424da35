import json

from openai import OpenAI

from app.core.config import get_settings

MAX_INPUT_CHARS = 60_000


class SummarizerNotConfigured(RuntimeError):
    pass


def summarize_text(text: str, max_length: int, tone: str | None = None) -> tuple[str, int]:
    """Return ``(summary, total_tokens)`` for ``text``.

    ``max_length`` is a word budget; the model is asked to respect it and the
    result is trimmed if it does not.
    """
    settings = get_settings()
    if not settings.openai_api_key:
        raise SummarizerNotConfigured("OPENAI_API_KEY is not configured.")

    client = OpenAI(api_key=settings.openai_api_key)
    system_prompt = (
        "You summarize documents for busy readers. "
        "Use only facts present in the provided text. Do not invent details."
    )
    developer_prompt = (
        "Return JSON only with a single key summary (string). "
        f"The summary must be at most {max_length} words"
        + (f" and written in a {tone} tone." if tone else ".")
    )
    completion = client.chat.completions.create(
        model=settings.openai_model,
        response_format={"type": "json_object"},
        messages=[
            {"role": "system", "content": system_prompt},
            {"role": "system", "content": developer_prompt},
            {"role": "user", "content": json.dumps({"text": text[:MAX_INPUT_CHARS]}, ensure_ascii=True)},
        ],
    )
    content = completion.choices[0].message.content or "{}"
    summary = str(json.loads(content).get("summary", "")).strip()
    tokens_used = completion.usage.total_tokens if completion.usage else 0
    return _trim_words(summary, max_length), tokens_used


def _trim_words(text: str, limit: int) -> str:
    words = text.split()
    if len(words) <= limit:
        return text
    return " ".join(words[:limit])
