##########################################################################################
#
# Script name: reporting.py
#
# Description: Collects per-feed and per-item outcomes for one run and renders the
#              execution report as JSON and Markdown.
#
##########################################################################################

import json
import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable

from .config import Settings
from .errors import ReportFinalizedError
from .utils import format_date_id, format_date_title, format_duration, format_instant, utc_now


# ****************************************************************************************
# Global data and configuration
# ****************************************************************************************

log = logging.getLogger(__name__)

ITEM_STATUSES = ('success', 'failed', 'skipped', 'cached')
MAX_MARKDOWN_ITEM_ERRORS = 10


# ****************************************************************************************
# Classes
# ****************************************************************************************


@dataclass(frozen=True)
class ErrorRecord:
    name: str
    message: str
    timestamp: str


@dataclass(frozen=True)
class FeedStats:
    total: int
    successful: int
    failed: int
    with_articles: int
    articles_per_feed: dict[str, int]
    errors: tuple[ErrorRecord, ...]


@dataclass(frozen=True)
class ItemStats:
    total: int
    processed: int
    successful: int
    failed: int
    skipped: int
    cached: int
    errors: tuple[ErrorRecord, ...]


@dataclass(frozen=True)
class Performance:
    total_duration: float
    average_item_processing_time: float

    @property
    def total_duration_formatted(self) -> str:
        return format_duration(self.total_duration)

    @property
    def average_item_processing_time_formatted(self) -> str:
        return format_duration(self.average_item_processing_time)


@dataclass(frozen=True)
class FinalizedReport:
    timestamp: str
    date_string: str
    date_id: str
    date_filter_enabled: bool
    config: dict[str, Any]
    feeds: FeedStats
    items: ItemStats
    performance: Performance

    def to_dict(self) -> dict[str, Any]:
        feeds = asdict(self.feeds)
        items = asdict(self.items)
        return {
            'timestamp': self.timestamp,
            'date': {
                'dateString': self.date_string,
                'dateId': self.date_id,
                'dateFilterEnabled': self.date_filter_enabled,
            },
            'config': dict(self.config),
            'feeds': {
                'total': feeds['total'],
                'successful': feeds['successful'],
                'failed': feeds['failed'],
                'withArticles': feeds['with_articles'],
                'articlesPerFeed': feeds['articles_per_feed'],
                'errors': [{'feed': e['name'], 'message': e['message'], 'timestamp': e['timestamp']} for e in feeds['errors']],
            },
            'items': {
                'total': items['total'],
                'processed': items['processed'],
                'successful': items['successful'],
                'failed': items['failed'],
                'skipped': items['skipped'],
                'cached': items['cached'],
                'errors': [{'item': e['name'], 'message': e['message'], 'timestamp': e['timestamp']} for e in items['errors']],
            },
            'performance': {
                'totalDuration': self.performance.total_duration,
                'totalDurationFormatted': self.performance.total_duration_formatted,
                'averageItemProcessingTime': self.performance.average_item_processing_time,
                'averageItemProcessingTimeFormatted': self.performance.average_item_processing_time_formatted,
            },
        }


@dataclass
class _Counters:
    total: int = 0
    successful: int = 0
    failed: int = 0
    processed: int = 0
    skipped: int = 0
    cached: int = 0
    errors: list[ErrorRecord] = field(default_factory=list)


class RunReport:
    '''
    Mutable collector for one run. Callers record feed and item outcomes as
    they settle; `finalize()` freezes the numbers into a FinalizedReport and
    closes the collector for good.
    '''

    def __init__(
        self,
        settings: Settings,
        clock: Callable[[], datetime] = utc_now,
        timer: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings
        self.clock = clock
        self.timer = timer
        self.started_at = clock()
        self._start = timer()
        self._feeds = _Counters()
        self._with_articles: dict[str, int] = {}
        self._items = _Counters()
        self._processing_times: list[float] = []
        self._finalized = False

    @property
    def finalized(self) -> bool:
        return self._finalized

    def _ensure_open(self) -> None:
        if self._finalized:
            raise ReportFinalizedError('Run report has already been finalized')

    def _error(self, name: str, error: BaseException | str | None) -> ErrorRecord:
        return ErrorRecord(name=name or 'Unknown', message=str(error), timestamp=format_instant(self.clock()))

    def record_feed_result(self, success: bool, error: BaseException | str | None = None, feed_name: str = '') -> None:
        self._ensure_open()
        self._feeds.total += 1
        if success:
            self._feeds.successful += 1
            return
        self._feeds.failed += 1
        if error is not None:
            self._feeds.errors.append(self._error(feed_name, error))

    def record_feed_articles(self, feed_name: str, count: int) -> None:
        self._ensure_open()
        if count > 0:
            self._with_articles[feed_name] = count

    def record_item_result(
        self,
        status: str,
        processing_time: float = 0.0,
        error: BaseException | str | None = None,
        item_title: str = '',
    ) -> None:
        self._ensure_open()
        if status not in ITEM_STATUSES:
            raise ValueError(f'Unknown item status: {status}')
        items = self._items
        items.total += 1
        if status == 'success':
            items.successful += 1
            items.processed += 1
        elif status == 'cached':
            items.cached += 1
            items.successful += 1
            items.processed += 1
        elif status == 'skipped':
            items.skipped += 1
        else:
            items.failed += 1
            if error is not None:
                items.errors.append(self._error(item_title, error))
        if processing_time > 0:
            self._processing_times.append(processing_time)

    def _config_snapshot(self) -> dict[str, Any]:
        s = self.settings
        return {
            'maxFeeds': s.max_feeds,
            'maxItemsPerFeed': s.max_items_per_feed,
            'maxConcurrentFeeds': s.max_concurrent_feeds,
            'maxConcurrentItems': s.max_concurrent_items,
            'enableFullArticleFetch': s.enable_full_article_fetch,
            'digestCacheEnabled': s.enable_digest_cache,
            'dateFilterEnabled': s.date_filter_enabled,
            'openaiModel': s.openai_model,
            'publishMode': s.publish_mode,
            'retentionDays': s.retention_days,
        }

    def finalize(self) -> FinalizedReport:
        self._ensure_open()
        self._finalized = True
        times = self._processing_times
        average = sum(times) / len(times) if times else 0.0
        return FinalizedReport(
            timestamp=format_instant(self.clock()),
            date_string=format_date_title(self.started_at),
            date_id=format_date_id(self.started_at),
            date_filter_enabled=self.settings.date_filter_enabled,
            config=self._config_snapshot(),
            feeds=FeedStats(
                total=self._feeds.total,
                successful=self._feeds.successful,
                failed=self._feeds.failed,
                with_articles=len(self._with_articles),
                articles_per_feed=dict(self._with_articles),
                errors=tuple(self._feeds.errors),
            ),
            items=ItemStats(
                total=self._items.total,
                processed=self._items.processed,
                successful=self._items.successful,
                failed=self._items.failed,
                skipped=self._items.skipped,
                cached=self._items.cached,
                errors=tuple(self._items.errors),
            ),
            performance=Performance(
                total_duration=max(0.0, self.timer() - self._start),
                average_item_processing_time=average,
            ),
        )


# ****************************************************************************************
# Functions
# ****************************************************************************************


def generate_json_report(report: FinalizedReport) -> str:
    return json.dumps(report.to_dict(), indent=2)


def _enabled(flag: bool) -> str:
    return 'Enabled' if flag else 'Disabled'


def generate_markdown_report(report: FinalizedReport) -> str:
    config = report.config
    feeds = report.feeds
    items = report.items
    mode = "Daily Digest (today's articles)" if report.date_filter_enabled else 'Legacy (latest N articles)'
    lines = [
        '# Feed Digest Report',
        '',
        f'**Date:** {report.date_string}',
        f'**Mode:** {mode}',
        f'**Generated:** {report.timestamp}',
        f'**Duration:** {report.performance.total_duration_formatted}',
        '',
        '## Configuration',
        '',
        f"- **Model:** {config['openaiModel']}",
        f"- **Max Feeds:** {config['maxFeeds']}",
        f"- **Date Filter:** {'Enabled (daily mode)' if config['dateFilterEnabled'] else 'Disabled (legacy mode)'}",
    ]
    if not config['dateFilterEnabled']:
        lines.append(f"- **Max Items Per Feed:** {config['maxItemsPerFeed']}")
    lines += [
        f"- **Concurrent Feeds:** {config['maxConcurrentFeeds']}",
        f"- **Concurrent Items:** {config['maxConcurrentItems']}",
        f"- **Full Article Fetch:** {_enabled(config['enableFullArticleFetch'])}",
        f"- **Digest Cache:** {_enabled(config['digestCacheEnabled'])}",
        f"- **Publish Mode:** {config['publishMode']}",
        '',
        '## Feed Processing Summary',
        '',
        f'- **Total Feeds Checked:** {feeds.total}',
        f'- **Feeds with Articles:** {feeds.with_articles}',
        f'- **Successful:** {feeds.successful}',
        f'- **Failed:** {feeds.failed}',
        '',
    ]

    if feeds.articles_per_feed:
        lines += ['### Articles Per Feed', '', '| Feed | Articles |', '|------|----------|']
        for name, count in sorted(feeds.articles_per_feed.items(), key=lambda pair: pair[1], reverse=True):
            lines.append(f'| {name} | {count} |')
        lines.append('')

    if feeds.errors:
        lines += ['### Feed Errors', '']
        lines += [f'- **{e.name}:** {e.message}' for e in feeds.errors]
        lines.append('')

    lines += [
        '## Item Processing Summary',
        '',
        f'- **Total Items:** {items.total}',
        f'- **Processed:** {items.processed}',
        f'- **Successful:** {items.successful}',
        f'- **Failed:** {items.failed}',
        f'- **Skipped:** {items.skipped}',
        f'- **From Cache:** {items.cached}',
        '',
    ]

    if items.errors:
        lines += ['### Item Errors', '']
        lines += [f'- **{e.name}:** {e.message}' for e in items.errors[:MAX_MARKDOWN_ITEM_ERRORS]]
        if len(items.errors) > MAX_MARKDOWN_ITEM_ERRORS:
            lines.append(f'- ... and {len(items.errors) - MAX_MARKDOWN_ITEM_ERRORS} more errors')
        lines.append('')

    lines += [
        '## Performance Metrics',
        '',
        f'- **Total Duration:** {report.performance.total_duration_formatted}',
        f'- **Average Item Processing Time:** {report.performance.average_item_processing_time_formatted}',
        '',
    ]
    return '\n'.join(lines)


def save_reports(report: FinalizedReport, directory: str) -> dict[str, Path]:
    out_dir = Path(directory)
    out_dir.mkdir(parents=True, exist_ok=True)
    stamp = report.timestamp.replace(':', '-').replace('.', '-')

    json_path = out_dir / f'execution-{stamp}.json'
    json_path.write_text(generate_json_report(report), encoding='utf-8')
    log.info('JSON report saved to: %s', json_path)

    markdown_path = out_dir / f'execution-{stamp}.md'
    markdown_path.write_text(generate_markdown_report(report), encoding='utf-8')
    log.info('Markdown report saved to: %s', markdown_path)

    return {'json': json_path, 'markdown': markdown_path}


def log_report_summary(report: FinalizedReport) -> None:
    log.info('=' * 60)
    log.info('EXECUTION SUMMARY')
    log.info('=' * 60)
    log.info('Date: %s', report.date_string)
    log.info('Mode: %s', 'Daily Digest' if report.date_filter_enabled else 'Legacy')
    log.info('Duration: %s', report.performance.total_duration_formatted)
    log.info('Feeds Checked: %d', report.feeds.total)
    log.info('Feeds with Articles: %d', report.feeds.with_articles)
    log.info('Articles Processed: %d/%d successful', report.items.successful, report.items.total)
    if report.items.cached:
        log.info('  From Cache: %d', report.items.cached)
    if report.items.failed:
        log.info('  Failed: %d', report.items.failed)
    if report.feeds.failed:
        log.info('Failed Feeds: %d', report.feeds.failed)
    log.info('=' * 60)
