##########################################################################################
#
# Script name: render.py
#
# Description: Published-output store: builds feed entries from digests and reads and
#              writes the RSS document.
#
##########################################################################################

import logging
import os
import xml.etree.ElementTree as ET
from datetime import datetime, timezone
from email.utils import format_datetime
from html import escape
from pathlib import Path

import feedparser

from .config import Settings
from .models import Digest, PublishedEntry
from .utils import format_date_id, format_date_title, utc_now


# ****************************************************************************************
# Global data and configuration
# ****************************************************************************************

log = logging.getLogger(__name__)

SEPARATOR = '------'


# ****************************************************************************************
# Functions
# ****************************************************************************************


def _paragraph_label(index: int, title: str) -> str:
    return '' if not title or title == f'Section {index + 1}' else title


def format_digest_text(digest: Digest) -> str:
    layers = digest.layers
    parts = []
    if layers.one_line:
        parts.append(layers.one_line)
    parts.append(SEPARATOR)
    if layers.overall:
        parts.append(layers.overall)
    parts.append(SEPARATOR)
    if layers.paragraphs:
        lines = []
        for position, paragraph in enumerate(layers.paragraphs):
            label = _paragraph_label(position, paragraph.title)
            prefix = f'[{position + 1}] {label}: ' if label else f'[{position + 1}] '
            lines.append(prefix + paragraph.summary)
        parts.append('Key sections:\n' + '\n\n'.join(lines))
    return '\n\n'.join(parts)


def _render_digest_html(digest: Digest) -> str:
    layers = digest.layers
    items = []
    for position, paragraph in enumerate(layers.paragraphs):
        label = _paragraph_label(position, paragraph.title)
        prefix = f'<strong>{escape(label)}</strong>: ' if label else ''
        items.append(f'<li>{prefix}{escape(paragraph.summary)}</li>')
    paragraphs = ''.join(items)
    return (
        '<div class="digest">'
        f'<h3><a href="{escape(digest.link)}">{escape(digest.title)}</a></h3>'
        f'<p><strong>{escape(layers.one_line)}</strong></p>'
        f'<p>{escape(layers.overall)}</p>'
        + (f'<ol>{paragraphs}</ol>' if paragraphs else '')
        + '</div>'
    )


def _group_by_source(digests: list[Digest]) -> dict[str, list[Digest]]:
    groups: dict[str, list[Digest]] = {}
    for digest in digests:
        groups.setdefault(digest.source_name, []).append(digest)
    return groups


def build_aggregate_entry(digests: list[Digest], settings: Settings, now: datetime | None = None) -> PublishedEntry:
    '''
    One entry for the whole run, identified by the UTC date so a re-run on the
    same day replaces the earlier entry instead of duplicating it.
    '''
    now = now or utc_now()
    sections = []
    for source_name, items in _group_by_source(digests).items():
        body = ''.join(_render_digest_html(digest) for digest in items)
        sections.append(f'<section><h2>{escape(source_name)}</h2>{body}</section>')
    return PublishedEntry(
        id=f'digest-{format_date_id(now)}',
        title=f'{settings.channel_title} - {format_date_title(now)}',
        link=settings.channel_link,
        published_at=now,
        description=''.join(sections),
    )


def build_flat_entries(digests: list[Digest]) -> list[PublishedEntry]:
    return [
        PublishedEntry(
            id=digest.fingerprint,
            title=digest.title,
            link=digest.link,
            published_at=digest.published_at,
            description=f'{digest.source_name}: {format_digest_text(digest)}',
        )
        for digest in digests
    ]


def build_published_entries(
    digests: list[Digest], settings: Settings, now: datetime | None = None
) -> list[PublishedEntry]:
    if settings.publish_mode == 'flat':
        return build_flat_entries(digests)
    return [build_aggregate_entry(digests, settings, now=now)]


def _struct_to_datetime(value) -> datetime | None:
    if not value:
        return None
    return datetime(*value[:6], tzinfo=timezone.utc)


def read_published(path: str) -> list[PublishedEntry]:
    feed_path = Path(path)
    if not feed_path.exists():
        return []
    parsed = feedparser.parse(feed_path.read_bytes())
    if getattr(parsed, 'bozo', False) and not parsed.entries:
        log.warning('Existing output %s could not be parsed: %s', path, parsed.get('bozo_exception'))
        return []
    entries: list[PublishedEntry] = []
    for item in parsed.entries:
        identity = item.get('id') or item.get('link')
        if not identity:
            continue
        entries.append(
            PublishedEntry(
                id=identity,
                title=item.get('title', ''),
                link=item.get('link', ''),
                published_at=_struct_to_datetime(item.get('published_parsed')),
                description=item.get('summary', ''),
            )
        )
    log.debug('Read %d previously published entr(ies) from %s', len(entries), path)
    return entries


def build_rss(entries: list[PublishedEntry], settings: Settings, now: datetime | None = None) -> bytes:
    now = now or utc_now()
    rss = ET.Element('rss', version='2.0')
    channel = ET.SubElement(rss, 'channel')
    ET.SubElement(channel, 'title').text = settings.channel_title
    ET.SubElement(channel, 'link').text = settings.channel_link
    ET.SubElement(channel, 'description').text = settings.channel_description
    ET.SubElement(channel, 'lastBuildDate').text = format_datetime(now, usegmt=True)
    ET.SubElement(channel, 'language').text = 'en'
    for entry in entries:
        item = ET.SubElement(channel, 'item')
        ET.SubElement(item, 'title').text = entry.title
        ET.SubElement(item, 'link').text = entry.link or settings.channel_link
        ET.SubElement(item, 'guid', isPermaLink='false').text = entry.id
        if entry.published_at is not None:
            ET.SubElement(item, 'pubDate').text = format_datetime(
                entry.published_at.astimezone(timezone.utc), usegmt=True
            )
        ET.SubElement(item, 'description').text = entry.description
    ET.indent(rss)
    return ET.tostring(rss, encoding='utf-8', xml_declaration=True)


def write_published(entries: list[PublishedEntry], path: str, settings: Settings, now: datetime | None = None) -> None:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = target.with_name(f'.{target.name}.tmp')
    try:
        tmp_path.write_bytes(build_rss(entries, settings, now=now))
        os.replace(tmp_path, target)
    except OSError:
        tmp_path.unlink(missing_ok=True)
        raise
    log.info('Wrote %d entr(ies) to %s', len(entries), target)
