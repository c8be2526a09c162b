"""Normalization helpers for barcodes, spreadsheet cells and ISBN metadata.

All functions here are total: whatever they receive (strings, numbers, lists,
mappings, ``None``) they return a canonical value or an empty/neutral default
and never raise.
"""

from __future__ import annotations

import math
import re
from typing import Any, Dict, Iterable, List, Optional

TRUE_VALUES = {"true", "1", "yes", "y", "ja", "on"}

_MULTI_VALUE_SPLIT = re.compile(r"[,;/\n]+")
_YEAR_PATTERN = re.compile(r"(\d{4})")
_INTEGER_PATTERN = re.compile(r"\d+")

# MARC language codes used by Open Library -> ISO 639-1
_LANGUAGE_ALIASES = {
    "dut": "nl",
    "nld": "nl",
    "eng": "en",
    "ger": "de",
    "deu": "de",
    "fre": "fr",
    "fra": "fr",
    "spa": "es",
    "fry": "fy",
    "tur": "tr",
    "ara": "ar",
}

# Highest resolution first, same order as the Google Books imageLinks keys
_COVER_KEYS = ("extraLarge", "large", "medium", "small", "thumbnail", "smallThumbnail")


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value).strip()


def normalize_header(key: Any) -> str:
    """Lower-case and trim a spreadsheet column header."""
    return _text(key).lower()


def normalize_barcode(raw: Any) -> str:
    """Keep the digits of ``raw`` plus a single trailing ``X`` (upper-cased).

    >>> normalize_barcode(" 978-90-451-1234-x ")
    '978904511234X'
    """
    if isinstance(raw, bool):
        return ""
    trimmed = _text(raw)
    if not trimmed:
        return ""
    has_trailing_x = trimmed[-1] in "xX"
    digits = re.sub(r"[^0-9]", "", trimmed)
    if not digits and not has_trailing_x:
        return ""
    return f"{digits}X" if has_trailing_x else digits


def barcodes_match(left: Any, right: Any) -> bool:
    normalized = normalize_barcode(left)
    return bool(normalized) and normalized == normalize_barcode(right)


def _first_named(values: Iterable[Any], *keys: str) -> str:
    for entry in values:
        if isinstance(entry, dict):
            for key in keys:
                candidate = _text(entry.get(key))
                if candidate:
                    return candidate
            continue
        candidate = _text(entry)
        if candidate:
            return candidate
    return ""


def normalize_publisher(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        return _first_named(value, "name")
    if isinstance(value, dict):
        return _text(value.get("name"))
    return _text(value)


def normalize_language_code(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        value = _first_named(value, "key", "code", "name")
    elif isinstance(value, dict):
        value = _text(value.get("key") or value.get("code"))
    code = _text(value).lower()
    if code.startswith("/languages/"):
        code = code[len("/languages/"):]
    return _LANGUAGE_ALIASES.get(code, code)


def normalize_cover_url(value: Any) -> str:
    if isinstance(value, dict):
        value = next((value[key] for key in _COVER_KEYS if value.get(key)), "")
    elif isinstance(value, (list, tuple)):
        value = _first_named(value, "url")
    url = _text(value)
    if url.startswith("http://"):
        url = "https://" + url[len("http://"):]
    return url


def normalize_published_year(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            return None
        year = int(value)
        return year if year > 0 else None
    if isinstance(value, (list, tuple)):
        for entry in value:
            year = normalize_published_year(entry)
            if year is not None:
                return year
        return None
    match = _YEAR_PATTERN.search(_text(value))
    return int(match.group(1)) if match else None


def normalize_page_count_value(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            return None
        pages = round(value)
        return pages if pages > 0 else None
    if isinstance(value, (list, tuple)):
        for entry in value:
            pages = normalize_page_count_value(entry)
            if pages is not None:
                return pages
        return None
    match = _INTEGER_PATTERN.search(_text(value))
    if not match:
        return None
    pages = int(match.group(0))
    return pages if pages > 0 else None


def parse_multi_value_field(value: Any) -> List[str]:
    """Split a free-text cell into an ordered list of non-empty entries."""
    if value is None:
        return []
    if isinstance(value, (list, tuple, set)):
        entries = [_first_named([entry], "name") for entry in value]
        return [entry for entry in entries if entry]
    return [part.strip() for part in _MULTI_VALUE_SPLIT.split(_text(value)) if part.strip()]


def parse_boolean_flag(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return _text(value).lower() in TRUE_VALUES


def _author_names(raw: Dict[str, Any]) -> List[str]:
    authors = raw.get("authors")
    names = parse_multi_value_field(authors) if isinstance(authors, (list, tuple)) else []
    if not names and raw.get("author"):
        names = [_text(raw.get("author"))]
    return names


def _description(value: Any) -> str:
    # Open Library sometimes wraps text as {"type": ..., "value": ...}
    if isinstance(value, dict):
        return _text(value.get("value"))
    return _text(value)


def _first_present(raw: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = raw.get(key)
        if value not in (None, "", [], {}):
            return value
    return None


def normalize_isbn_metadata(raw: Optional[Dict[str, Any]], isbn: str = "", source: str = "unknown") -> Dict[str, Any]:
    """Bring a loosely shaped metadata payload into the book's bibliographic shape."""
    raw = raw or {}
    authors = _author_names(raw)
    result = {
        "barcode": normalize_barcode(raw.get("barcode")) or normalize_barcode(isbn),
        "title": _text(raw.get("title")),
        "author": ", ".join(authors),
        "authors": authors,
        "description": _description(raw.get("description")),
        "publisher": normalize_publisher(_first_present(raw, "publisher", "publishers")),
        "publishedYear": normalize_published_year(
            _first_present(raw, "publishedYear", "publishedAt", "publishedDate", "publish_date")
        ),
        "pageCount": normalize_page_count_value(
            _first_present(raw, "pageCount", "pages", "number_of_pages", "numberOfPages")
        ),
        "language": normalize_language_code(_first_present(raw, "language", "languages")),
        "coverUrl": normalize_cover_url(_first_present(raw, "coverUrl", "cover", "imageLinks", "thumbnail")),
        "tags": parse_multi_value_field(_first_present(raw, "tags", "categories", "subjects")),
        "source": _text(raw.get("source")) or source,
    }
    result["found"] = has_metadata(result)
    return result


def has_metadata(metadata: Dict[str, Any]) -> bool:
    """A lookup counts as found when any of the identifying text fields is present."""
    return any(_text(metadata.get(key)) for key in ("title", "author", "description", "publisher"))


def empty_metadata(isbn: str = "", source: str = "none") -> Dict[str, Any]:
    result = normalize_isbn_metadata({}, isbn, source)
    result["source"] = source
    return result
