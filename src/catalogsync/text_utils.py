from __future__ import annotations

import unicodedata
from collections.abc import Iterable

_SIZE_UNITS = ("B", "KB", "MB", "GB")


def normalize_text(value: str) -> str:
    """Return UTF-8 safe text by collapsing surrogate-escaped bytes.

    Names coming from uploads may contain undecodable bytes represented as
    lone surrogates. SQLite text binding and terminal rendering reject those,
    so normalize them to replacement characters while keeping valid UTF-8
    data untouched. Also canonicalize to NFC so composed and decomposed
    spellings of the same name compare equal.
    """
    safe = value.encode("utf-8", "surrogateescape").decode("utf-8", "replace")
    return unicodedata.normalize("NFC", safe)


def normalize_tag(tag: str) -> str:
    """Comparison key for a tag: trimmed, case-folded, NFC."""
    folded = normalize_text(tag).strip().casefold()
    return unicodedata.normalize("NFC", folded).strip()


def same_tag(left: str, right: str) -> bool:
    return normalize_tag(left) == normalize_tag(right)


def clean_name(value: str) -> str:
    return normalize_text(value).strip()


def format_file_size(size_bytes: int) -> str:
    if size_bytes <= 0:
        return "0 B"
    exponent = 0
    while size_bytes >= 1024 ** (exponent + 1) and exponent < len(_SIZE_UNITS) - 1:
        exponent += 1
    value = round(size_bytes / 1024**exponent, 1)
    return f"{value:g} {_SIZE_UNITS[exponent]}"


def dedupe_tags(tags: Iterable[str]) -> tuple[str, ...]:
    """Drop blank tags and later spellings of an already present tag."""
    seen: set[str] = set()
    kept: list[str] = []
    for tag in tags:
        cleaned = clean_name(tag)
        key = normalize_tag(cleaned)
        if not key or key in seen:
            continue
        seen.add(key)
        kept.append(cleaned)
    return tuple(kept)
