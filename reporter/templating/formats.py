from __future__ import annotations

from reporter.core.errors import EmptyFileError, FileContentInvalidError, InvalidOutputFormatError


# Formats a template can declare; txt is only accepted for content checks and MIME lookups.
TEMPLATE_OUTPUT_FORMATS = ("html", "pdf", "csv", "xml")

_MIME_TYPES = {
    "xml": "application/xml",
    "html": "text/html",
    "csv": "text/csv",
    "txt": "text/plain",
    "pdf": "application/pdf",
}
DEFAULT_MIME_TYPE = "application/octet-stream"


def mime_type_for(output_format: str) -> str:
    return _MIME_TYPES.get((output_format or "").lower(), DEFAULT_MIME_TYPE)


def normalize_output_format(output_format: str) -> str:
    return (output_format or "").strip().lower()


def is_valid_output_format(output_format: str) -> bool:
    return normalize_output_format(output_format) in TEMPLATE_OUTPUT_FORMATS


def ensure_valid_output_format(output_format: str) -> str:
    normalized = normalize_output_format(output_format)
    if normalized not in TEMPLATE_OUTPUT_FORMATS:
        raise InvalidOutputFormatError()
    return normalized


def _looks_like_html(content: str) -> bool:
    lowered = content.lower()
    return "<html" in lowered or "<!doctype html" in lowered


def _looks_like_csv(content: str) -> bool:
    # Raw newline split: a header followed by a trailing newline counts as two lines.
    lines = content.split("\n")
    if len(lines) < 2:
        return False
    return "," in lines[0] or ";" in lines[0]


def validate_file_format(output_format: str, content: str | bytes) -> None:
    """Check that template content plausibly renders to ``output_format``.

    PDF templates are authored as HTML, so both share the HTML check.
    """
    text = content.decode("utf-8", errors="replace") if isinstance(content, bytes) else content
    if not text.strip():
        raise EmptyFileError()
    normalized = normalize_output_format(output_format)
    if normalized in {"html", "pdf"}:
        valid = _looks_like_html(text)
    elif normalized == "xml":
        valid = "<?xml" in text or "<" in text
    elif normalized == "csv":
        valid = _looks_like_csv(text)
    elif normalized == "txt":
        valid = True
    else:
        raise InvalidOutputFormatError()
    if not valid:
        raise FileContentInvalidError(normalized)
