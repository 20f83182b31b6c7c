from __future__ import annotations

from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from stash.errors import ValidationError


def normalize_url(url: str) -> str:
    if not url:
        return ""
    parsed = urlparse(url.strip())
    scheme = (parsed.scheme or "https").lower()
    netloc = parsed.netloc.lower()
    path = parsed.path or "/"
    query_items = sorted(parse_qsl(parsed.query, keep_blank_values=True))
    normalized_query = urlencode(query_items)
    return urlunparse((scheme, netloc, path, "", normalized_query, ""))


def validate_url(url: str | None) -> str:
    value = (url or "").strip()
    if not value:
        raise ValidationError("url is required")
    try:
        parsed = urlparse(value)
    except ValueError as exc:
        raise ValidationError(f"invalid url: {value}") from exc
    if not parsed.scheme or not parsed.netloc or any(ch.isspace() for ch in value):
        raise ValidationError(f"invalid url: {value}")
    return value


def normalize_title(value) -> str | None:
    if value is None:
        return None
    return str(value).strip() or None


def normalize_notes(value) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    if text.lower() == "none":
        return None
    return text


def to_bool(value, default=False):
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}
