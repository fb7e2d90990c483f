##########################################################################################
#
# Script name: fetchers.py
#
# Description: Loads the source list, fetches raw feeds through the raw-source cache,
#              and normalizes feed entries.
#
##########################################################################################

import asyncio
import base64
import logging
import xml.etree.ElementTree as ET
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

import feedparser
import requests
import yaml
from dateutil import parser as date_parser

from .backoff import BackoffPolicy, log_retry, run_with_backoff
from .cache import FEEDS, CacheStore
from .config import Settings
from .errors import FeedFetchError, FeedParseError, SourceConfigError
from .models import Entry, Source
from .utils import canonicalize_url, is_same_utc_day, sha256_hex, strip_html, utc_now


# ****************************************************************************************
# Global data and configuration
# ****************************************************************************************

log = logging.getLogger(__name__)
USER_AGENT = 'feed-digest/1.0 (+https://github.com/)'
FEED_ACCEPT = 'application/rss+xml, application/atom+xml;q=0.9, */*;q=0.8'
UNTITLED = 'Untitled entry'


# ****************************************************************************************
# Functions
# ****************************************************************************************


def _flatten_outlines(node: ET.Element) -> list[Source]:
    sources: list[Source] = []
    for outline in node.findall('outline'):
        url = (outline.get('xmlUrl') or '').strip()
        if url:
            name = outline.get('title') or outline.get('text') or url
            sources.append(Source(name=name.strip(), endpoint=url))
        sources.extend(_flatten_outlines(outline))
    return sources


def _load_opml_sources(path: Path) -> list[Source]:
    try:
        root = ET.parse(path).getroot()
    except ET.ParseError as exc:
        raise SourceConfigError(f'Malformed OPML file at {path}: {exc}') from exc
    body = root.find('body')
    if body is None:
        raise SourceConfigError(f'No outlines found in OPML file at {path}')
    return _flatten_outlines(body)


def _load_yaml_sources(path: Path) -> list[Source]:
    with open(path, 'r', encoding='utf-8') as handle:
        payload = yaml.safe_load(handle) or {}
    rows = payload.get('sources', []) if isinstance(payload, dict) else None
    if not isinstance(rows, list):
        raise SourceConfigError('config.sources must be a list')
    sources: list[Source] = []
    for row in rows:
        if not isinstance(row, dict):
            continue
        url = (row.get('url') or row.get('endpoint') or '').strip()
        if not url:
            log.warning('Skipping source without url: %s', row)
            continue
        sources.append(Source(name=(row.get('name') or url).strip(), endpoint=url))
    return sources


def dedupe_sources(sources: list[Source]) -> list[Source]:
    unique: list[Source] = []
    seen: set[str] = set()
    for source in sources:
        signature = canonicalize_url(source.endpoint)
        if signature in seen:
            log.debug('Dropping duplicate source %s (%s)', source.name, source.endpoint)
            continue
        seen.add(signature)
        unique.append(source)
    return unique


def load_sources(path: str, max_feeds: int | None = None, feed_index: int | None = None) -> list[Source]:
    source_path = Path(path)
    if not source_path.exists():
        raise SourceConfigError(f'Source list not found: {path}')
    if source_path.suffix.lower() in {'.yaml', '.yml'}:
        sources = _load_yaml_sources(source_path)
    else:
        sources = _load_opml_sources(source_path)

    sources = dedupe_sources(sources)
    if not sources:
        raise SourceConfigError(f'{path} does not contain any feed definitions.')
    if feed_index is not None:
        if feed_index >= len(sources):
            raise SourceConfigError(f'Feed index {feed_index} is out of range; {path} lists {len(sources)} feed(s).')
        sources = [sources[feed_index]]
    elif max_feeds is not None and max_feeds > 0:
        sources = sources[:max_feeds]
    log.info('Loaded %d source(s) from %s.', len(sources), path)
    return sources


def fetch_feed_bytes(source: Source, timeout: float) -> bytes:
    response = requests.get(
        source.endpoint,
        headers={'User-Agent': USER_AGENT, 'Accept': FEED_ACCEPT},
        timeout=timeout,
    )
    response.raise_for_status()
    return response.content


async def load_feed(
    source: Source,
    cache: CacheStore,
    settings: Settings,
    fetch: Callable[[Source, float], bytes] = fetch_feed_bytes,
    policy: BackoffPolicy | None = None,
) -> bytes:
    '''
    Return the raw feed body for `source`, from the raw-source cache when fresh.
    '''
    key = sha256_hex(source.endpoint)
    cached = await cache.get(FEEDS, key)
    if cached is not None:
        try:
            log.debug('Using cached feed body for %s', source.name)
            return base64.b64decode(cached['body'])
        except (KeyError, TypeError, ValueError) as exc:
            log.warning('Ignoring unreadable cached feed for %s: %s', source.name, exc)

    policy = policy or BackoffPolicy.from_settings(settings, on_retry=log_retry(f'Feed {source.endpoint}'))
    try:
        raw = await run_with_backoff(
            lambda: asyncio.to_thread(fetch, source, settings.content_fetch_timeout),
            policy,
        )
    except requests.RequestException as exc:
        raise FeedFetchError(source.endpoint, str(exc)) from exc

    await cache.put(FEEDS, key, {'endpoint': source.endpoint, 'body': base64.b64encode(raw).decode('ascii')})
    return raw


def parse_published(entry: dict) -> datetime | None:
    candidates = [
        entry.get('published'),
        entry.get('updated'),
        entry.get('created'),
    ]
    for candidate in candidates:
        if not candidate:
            continue
        try:
            parsed = date_parser.parse(candidate)
        except (ValueError, TypeError, OverflowError):
            continue
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)
    return None


def _entry_body(entry: dict) -> str:
    contents = entry.get('content') or []
    for content in contents:
        value = content.get('value') if isinstance(content, dict) else None
        if value:
            return value
    return entry.get('summary') or entry.get('description') or ''


def parse_feed(raw: bytes, source: Source, now: datetime | None = None) -> list[Entry]:
    now = now or utc_now()
    parsed = feedparser.parse(raw)
    if getattr(parsed, 'bozo', False):
        if not parsed.entries:
            raise FeedParseError(f'Unsupported or malformed feed for {source.name}: {parsed.get("bozo_exception")}')
        log.warning('Feed parse warning for %s: %s', source.name, parsed.get('bozo_exception'))

    entries: list[Entry] = []
    for item in parsed.entries:
        title = strip_html(item.get('title', '')) or UNTITLED
        link = (item.get('link') or item.get('id') or '').strip()
        entries.append(
            Entry(
                source_name=source.name,
                title=title,
                link=link,
                raw_body=_entry_body(item),
                published_at=parse_published(item) or now,
            )
        )
    return entries


def select_entries(entries: list[Entry], settings: Settings, now: datetime | None = None) -> list[Entry]:
    '''
    Daily mode keeps today's (UTC) entries; legacy mode keeps the first
    MAX_ITEMS_PER_FEED entries. An explicit item limit caps either mode.
    '''
    now = now or utc_now()
    if settings.date_filter_enabled:
        selected = [entry for entry in entries if is_same_utc_day(entry.published_at, now)]
    else:
        selected = list(entries)
    cap = settings.items_per_feed_cap
    if cap is not None and cap >= 0:
        selected = selected[:cap]
    return selected
