"""Helpers for turning pasted text into a clean batch URL list."""

from __future__ import annotations

import logging
import re
import uuid
from datetime import date
from urllib.parse import urlparse

from src.dtos.batch_dto import ValidatedUrls

logger = logging.getLogger(__name__)

_SEPARATORS = re.compile(r"[\n,]")
_ALLOWED_SCHEMES = {"http", "https"}


def parse_urls(text: str) -> list[str]:
    """Split on newlines/commas, dropping blanks and ``#`` comment lines."""
    candidates = (part.strip() for part in _SEPARATORS.split(text or ""))
    return [c for c in candidates if c and not c.startswith("#")]


def is_valid_url(url: str) -> bool:
    """True for absolute http(s) URLs with a host."""
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    return parsed.scheme.lower() in _ALLOWED_SCHEMES and bool(parsed.netloc)


def validate_and_deduplicate_urls(text: str) -> ValidatedUrls:
    """Parse ``text``, split valid from invalid URLs and drop duplicates.

    Duplicates are detected case-insensitively; the first spelling wins.
    """
    parsed = parse_urls(text)
    valid: list[str] = []
    invalid: list[str] = []
    seen: set[str] = set()

    for url in parsed:
        if not is_valid_url(url):
            invalid.append(url)
            continue
        key = url.lower()
        if key in seen:
            continue
        seen.add(key)
        valid.append(url)

    duplicates_removed = len(parsed) - len(valid) - len(invalid)
    logger.debug(
        "URL validation: total=%d valid=%d invalid=%d duplicates=%d",
        len(parsed),
        len(valid),
        len(invalid),
        duplicates_removed,
    )
    return ValidatedUrls(
        valid=valid, invalid=invalid, duplicates_removed=duplicates_removed
    )


def generate_batch_name(urls: list[str]) -> str:
    """``"<first host> - <YYYY-MM-DD> - <short id>"``."""
    host = ""
    if urls:
        try:
            host = urlparse(urls[0]).hostname or ""
        except ValueError:
            host = ""
    short_id = uuid.uuid4().hex[:6]
    return f"{host or 'batch'} - {date.today().isoformat()} - {short_id}"
