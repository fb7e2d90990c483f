from __future__ import annotations

import hashlib
import html
import re
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse


UTM_PREFIXES = ("utm_", "fbclid", "gclid", "mc_cid", "mc_eid")
ELLIPSIS = "…"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_instant(value: datetime) -> str:
    """Serialize an instant as ISO-8601 UTC with millisecond precision and a Z suffix."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def parse_instant(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def start_of_utc_day(value: datetime) -> datetime:
    value = value.astimezone(timezone.utc)
    return value.replace(hour=0, minute=0, second=0, microsecond=0)


def is_same_utc_day(value: datetime, reference: datetime) -> bool:
    start = start_of_utc_day(reference)
    return start <= value.astimezone(timezone.utc) < start + timedelta(days=1)


def format_date_id(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%d")


def format_date_title(value: datetime) -> str:
    value = value.astimezone(timezone.utc)
    return f"{value.strftime('%B')} {value.day}, {value.year}"


def normalize_whitespace(value: str) -> str:
    return re.sub(r"\s+", " ", value or "").strip()


def strip_html(value: str) -> str:
    text = re.sub(r"<[^>]+>", " ", value or "")
    text = html.unescape(text)
    return normalize_whitespace(text)


def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def content_fingerprint(title: str, link: str, published_at: datetime | None) -> str:
    published = format_instant(published_at) if published_at else ""
    return sha256_hex(f"{title or ''}|{link or ''}|{published}")


def canonicalize_url(url: str) -> str:
    if not url:
        return ""
    parsed = urlparse(url.strip())
    query_pairs = [
        (key, value)
        for key, value in parse_qsl(parsed.query, keep_blank_values=False)
        if not any(key.lower().startswith(prefix) for prefix in UTM_PREFIXES)
    ]
    cleaned = parsed._replace(
        query=urlencode(query_pairs),
        fragment="",
        scheme=parsed.scheme.lower(),
        netloc=parsed.netloc.lower(),
    )
    return urlunparse(cleaned)


def truncate_text(text: str, max_chars: int) -> str:
    if not text or len(text) <= max_chars:
        return text or ""
    return text[:max_chars] + ELLIPSIS


def word_count(text: str) -> int:
    return len(text.split()) if text else 0


def format_duration(seconds: float) -> str:
    millis = int(round(seconds * 1000))
    if millis < 1000:
        return f"{millis}ms"
    if millis < 60000:
        return f"{millis / 1000:.1f}s"
    minutes, remainder = divmod(millis, 60000)
    return f"{minutes}m {remainder // 1000}s"
