from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone

from .models import PublishedEntry
from .utils import start_of_utc_day, utc_now


DATE_IN_ID = re.compile(r"(\d{4})-(\d{2})-(\d{2})")
OLDEST = datetime.min.replace(tzinfo=timezone.utc)


def derive_entry_date(entry: PublishedEntry) -> datetime | None:
    """Date of a published entry: from its id when it embeds one, else its publish time."""
    match = DATE_IN_ID.search(entry.id or "")
    if match:
        try:
            year, month, day = (int(part) for part in match.groups())
            return datetime(year, month, day, tzinfo=timezone.utc)
        except ValueError:
            pass
    if entry.published_at is not None:
        return entry.published_at.astimezone(timezone.utc)
    return None


def _sort_key(entry: PublishedEntry) -> datetime:
    if entry.published_at is not None:
        return entry.published_at.astimezone(timezone.utc)
    return derive_entry_date(entry) or OLDEST


def merge_published(
    current: list[PublishedEntry],
    previous: list[PublishedEntry],
    retention_days: int,
    now: datetime | None = None,
) -> list[PublishedEntry]:
    now = now or utc_now()
    cutoff = start_of_utc_day(now) - timedelta(days=retention_days)
    current_ids = {entry.id for entry in current}

    retained: list[PublishedEntry] = []
    for entry in previous:
        if entry.id in current_ids:
            continue
        entry_date = derive_entry_date(entry)
        if entry_date is not None and entry_date < cutoff:
            continue
        retained.append(entry)

    merged = list(current) + retained
    merged.sort(key=_sort_key, reverse=True)
    return merged
