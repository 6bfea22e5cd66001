"""Shared utility functions for requestarr."""

import re
from datetime import datetime, timezone
from typing import Optional


def normalize_http_url(
    url: Optional[str],
    *,
    default_scheme: str = "http",
    strip_trailing_slash: bool = True,
) -> str:
    """Normalize a configured HTTP URL for requests and links."""
    if not isinstance(url, str):
        return ""

    normalized = url.strip().strip("\"'").strip()
    if not normalized:
        return ""

    if "://" not in normalized:
        scheme = default_scheme.strip().rstrip(":/")
        if scheme:
            normalized = f"{scheme}://{normalized}"

    if strip_trailing_slash:
        normalized = normalized.rstrip("/")

    return normalized


def normalize_url_base(url_base: Optional[str]) -> str:
    """Return a URL base as '/path' without a trailing slash, or ''."""
    if not isinstance(url_base, str):
        return ""
    stripped = url_base.strip().strip("/")
    return f"/{stripped}" if stripped else ""


_WORD_BOUNDARY = re.compile(r"\s")


def truncate_text(text: Optional[str], length: int = 500, omission: str = "…") -> str:
    """Truncate text to at most ``length`` characters, cutting on whitespace."""
    value = str(text or "")
    if len(value) <= length:
        return value

    limit = max(0, length - len(omission))
    cut = value[:limit]
    boundaries = [match.start() for match in _WORD_BOUNDARY.finditer(cut)]
    if boundaries:
        cut = cut[: boundaries[-1]]
    return cut.rstrip() + omission


def year_from_date(value: Optional[str]) -> Optional[int]:
    """Extract the year from an ISO-like date string ('2021-04-30' -> 2021)."""
    if not isinstance(value, str) or len(value) < 4:
        return None
    try:
        return int(value[:4])
    except ValueError:
        return None


def now_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")
