"""Correlation tag codec."""

from ledgerlink.tags.codec import (
    TAG_ALPHABET,
    TAG_LENGTH,
    classify,
    extract,
    extract_all,
    format_tag,
    generate,
    generate_balancing,
    generate_monthly,
    has_tag,
    parse,
    parse_monthly,
    parse_note,
    remove,
    upsert,
)

__all__ = [
    "TAG_ALPHABET",
    "TAG_LENGTH",
    "classify",
    "extract",
    "extract_all",
    "format_tag",
    "generate",
    "generate_balancing",
    "generate_monthly",
    "has_tag",
    "parse",
    "parse_monthly",
    "parse_note",
    "remove",
    "upsert",
]
