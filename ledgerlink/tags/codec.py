"""
Tag Codec

Generation, embedding and parsing of correlation tags in free-text
transaction notes. Tags live between '#' delimiters, e.g. ``#A3K9M2#``.

DESIGN DECISION: Only the first delimited match in a note is recognised.
Callers that care about stray extra tags can use ``extract_all``.
"""

import re
import secrets
from typing import Optional

from pydantic import ValidationError

from ledgerlink.models.tags import (
    BalancingTag,
    MonthlyInfo,
    MonthlyTag,
    RegularTag,
    Tag,
    TagKind,
)


TAG_PATTERN = re.compile(r"#([A-Z0-9-]+)#")

# Excludes visually ambiguous characters (I, O, 0, 1)
TAG_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
TAG_LENGTH = 6

BALANCING_PREFIX = "B-"
MONTHLY_PREFIX = "M-"


def generate() -> str:
    """Random 6-character id, e.g. ``A3K9M2``."""
    return "".join(secrets.choice(TAG_ALPHABET) for _ in range(TAG_LENGTH))


def generate_balancing() -> str:
    return f"{BALANCING_PREFIX}{generate()}"


def generate_monthly(month: int, year: int) -> str:
    """
    Deterministic tag for a monthly contribution.

    The same (month, year) always yields the same tag, e.g. ``M-01-26``.
    """
    return f"{MONTHLY_PREFIX}{month:02d}-{str(year)[-2:]}"


def format_tag(tag: str) -> str:
    return f"#{tag}#"


def extract(note: Optional[str]) -> Optional[str]:
    """Return the first tag in ``note``, or None."""
    if not note:
        return None
    match = TAG_PATTERN.search(note)
    return match.group(1) if match else None


def extract_all(note: Optional[str]) -> list[str]:
    if not note:
        return []
    return TAG_PATTERN.findall(note)


def has_tag(note: Optional[str]) -> bool:
    return extract(note) is not None


def upsert(note: Optional[str], tag: str) -> str:
    """
    Embed ``tag`` into ``note``.

    An existing (first) tag is replaced in place; otherwise the tag is
    appended after a single space. An empty note becomes just the tag.
    """
    formatted = format_tag(tag)
    if not note:
        return formatted
    if TAG_PATTERN.search(note):
        return TAG_PATTERN.sub(lambda _: formatted, note, count=1)
    return f"{note} {formatted}"


def remove(note: Optional[str], tag: str) -> str:
    """Strip ``tag`` and its adjoining whitespace from ``note``."""
    if not note:
        return ""
    pattern = re.compile(r"\s*" + re.escape(format_tag(tag)) + r"\s*")
    return pattern.sub(" ", note).strip()


def classify(tag: str) -> TagKind:
    if tag.startswith(BALANCING_PREFIX):
        return TagKind.BALANCING
    if tag.startswith(MONTHLY_PREFIX):
        return TagKind.MONTHLY
    return TagKind.REGULAR


def parse_monthly(tag: Optional[str]) -> Optional[MonthlyInfo]:
    """
    Parse ``M-MM-YY`` into month and four-digit year.

    Returns None unless the tag splits into exactly three '-' parts with
    numeric month and year. The month value is not range checked.
    """
    if not tag:
        return None
    parts = tag.split("-")
    if len(parts) != 3:
        return None
    _, month, year = parts
    if not (month.isdigit() and year.isdigit()):
        return None
    return MonthlyInfo(month=int(month), year=2000 + int(year))


def parse(tag: str) -> Tag:
    """
    Parse a raw tag value into the typed tag union.

    Raises:
        ValueError: If the value is empty or not a valid tag
    """
    if not tag or not TAG_PATTERN.fullmatch(format_tag(tag)):
        raise ValueError(f"Not a valid tag: {tag!r}")

    kind = classify(tag)
    try:
        if kind == TagKind.BALANCING:
            return BalancingTag(value=tag)
        if kind == TagKind.MONTHLY:
            info = parse_monthly(tag)
            return MonthlyTag(
                value=tag,
                month=info.month if info else None,
                year=info.year if info else None,
            )
        return RegularTag(value=tag)
    except ValidationError as e:
        raise ValueError(f"Not a valid tag: {tag!r}") from e


def parse_note(note: Optional[str]) -> Optional[Tag]:
    """Extract and parse the first tag in ``note``."""
    value = extract(note)
    return parse(value) if value else None
