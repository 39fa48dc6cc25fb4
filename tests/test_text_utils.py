from __future__ import annotations

import random
import unicodedata

from catalogsync.text_utils import (
    clean_name,
    dedupe_tags,
    format_file_size,
    normalize_tag,
    normalize_text,
    same_tag,
)

_ALPHABET = "abcXYZ  \t\n-_éÉÉßẞÄä0123İ"


def test_normalize_text_replaces_surrogate_escapes() -> None:
    raw = b"report-\xff.pdf".decode("utf-8", "surrogateescape")

    assert normalize_text(raw) == "report-\ufffd.pdf"


def test_normalize_text_composes_decomposed_names() -> None:
    assert normalize_text("Cafe\u0301") == "Caf\u00e9"
    assert unicodedata.is_normalized("NFC", normalize_text("Cafe\u0301"))


def test_normalize_tag_trims_and_case_folds() -> None:
    assert normalize_tag("  Invoice ") == "invoice"
    assert normalize_tag("STRASSE") == normalize_tag("straße")
    assert same_tag("Café", "CAFÉ")
    assert not same_tag("draft", "drafts")


def test_normalize_tag_is_idempotent_for_random_strings() -> None:
    rng = random.Random(20260118)
    for _ in range(2000):
        value = "".join(rng.choice(_ALPHABET) for _ in range(rng.randint(0, 12)))
        once = normalize_tag(value)
        assert normalize_tag(once) == once, repr(value)


def test_clean_name_strips_whitespace() -> None:
    assert clean_name("  Reports \n") == "Reports"
    assert clean_name("   ") == ""


def test_dedupe_tags_keeps_first_spelling_and_drops_blanks() -> None:
    assert dedupe_tags(["Draft", " draft ", "", "  ", "final", "FINAL"]) == (
        "Draft",
        "final",
    )


def test_format_file_size_units() -> None:
    assert format_file_size(0) == "0 B"
    assert format_file_size(-5) == "0 B"
    assert format_file_size(512) == "512 B"
    assert format_file_size(1024) == "1 KB"
    assert format_file_size(1536) == "1.5 KB"
    assert format_file_size(3 * 1024 * 1024 // 2) == "1.5 MB"
    assert format_file_size(3 * 1024**3) == "3 GB"
    assert format_file_size(2 * 1024**4) == "2048 GB"
