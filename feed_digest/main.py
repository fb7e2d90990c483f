##########################################################################################
#
# Script name: main.py
#
# Description: CLI entrypoint for building and publishing the feed digest.
#
##########################################################################################

import argparse
import asyncio
import functools
import logging
import os
import sys
from datetime import date, datetime
from typing import Awaitable, Callable

from dotenv import load_dotenv

from .cache import CacheStore
from .config import PUBLISH_MODES, Settings
from .content import ExtractedContent, fetch_article_content
from .digest import DigestPipeline, TextGenerator
from .errors import ConfigError
from .fetchers import fetch_feed_bytes, load_feed, load_sources, parse_feed, select_entries
from .models import Digest, Entry, Source
from .render import build_published_entries, read_published, write_published
from .reporting import FinalizedReport, RunReport, generate_markdown_report, log_report_summary, save_reports
from .retention import merge_published
from .scheduler import BoundedScheduler, TaskOutcome
from .summarizer import Summarizer, load_custom_prompt
from .utils import content_fingerprint, utc_now


# ****************************************************************************************
# Global data and configuration
# ****************************************************************************************

log = logging.getLogger(__name__)

LOG_FILE = 'feed_digest.log'
CONSOLE_HANDLER = 'console'
formatter = logging.Formatter(
    '%(asctime)-15s [%(funcName)25s:%(lineno)-5s] %(levelname)-8s %(message)s'
)


# ****************************************************************************************
# Functions
# ****************************************************************************************


def configure_logging(verbose: bool = False, quiet: bool = False, log_file: str | None = LOG_FILE) -> None:
    root_log = logging.getLogger()
    root_log.setLevel(logging.DEBUG)

    if log_file and not any(isinstance(handler, logging.FileHandler) for handler in root_log.handlers):
        fh = logging.FileHandler(log_file, mode='w')
        fh.setLevel(logging.DEBUG)
        fh.setFormatter(formatter)
        root_log.addHandler(fh)

    for handler in list(root_log.handlers):
        if handler.get_name() == CONSOLE_HANDLER:
            root_log.removeHandler(handler)

    ch = logging.StreamHandler(sys.stdout)
    ch.set_name(CONSOLE_HANDLER)
    if verbose:
        ch.setLevel(logging.DEBUG)
    elif quiet:
        ch.setLevel(logging.ERROR)
    else:
        ch.setLevel(logging.INFO)
    ch.setFormatter(formatter)
    root_log.addHandler(ch)


async def _publish(digests: list[Digest], settings: Settings, now: datetime, dry_run: bool) -> None:
    current = build_published_entries(digests, settings, now=now)
    previous = await asyncio.to_thread(read_published, settings.output_feed)
    merged = merge_published(current, previous, settings.retention_days, now=now)
    if dry_run:
        log.info('Dry run: would write %d entr(ies) to %s', len(merged), settings.output_feed)
        return
    await asyncio.to_thread(write_published, merged, settings.output_feed, settings, now)


async def run_digest(
    settings: Settings,
    summarizer: TextGenerator | None = None,
    fetch_feed: Callable[[Source, float], bytes] = fetch_feed_bytes,
    fetch_content: Callable[[str], Awaitable[ExtractedContent]] | None = None,
    now: datetime | None = None,
    dry_run: bool = False,
) -> FinalizedReport:
    '''
    One complete run: load sources, digest every selected entry, merge the
    result into the published feed and finalize the run report.

    A failing source or entry is recorded and never stops its siblings. Only
    configuration problems (no sources, no credentials) abort the run, and
    they do so before any network or generation call is made.
    '''
    now = now or utc_now()
    sources = load_sources(settings.sources_path, max_feeds=settings.max_feeds, feed_index=settings.feed_index)
    if summarizer is None:
        settings.require_credentials()
        summarizer = Summarizer(settings)
    if fetch_content is None:
        fetch_content = functools.partial(fetch_article_content, settings=settings)

    cache = CacheStore.from_settings(settings)
    pipeline = DigestPipeline(
        settings,
        cache,
        summarizer,
        fetch_content,
        custom_prompt=load_custom_prompt(settings.summary_prompt_file),
    )
    report = RunReport(settings)
    claimed: set[str] = set()

    async def _process_source(source: Source) -> list[Digest]:
        raw = await load_feed(source, cache, settings, fetch=fetch_feed)
        entries = select_entries(parse_feed(raw, source, now=now), settings, now=now)
        log.info('%s: %d entr(ies) selected', source.name, len(entries))

        scheduled: list[Entry] = []
        for entry in entries:
            fingerprint = content_fingerprint(entry.title, entry.link, entry.published_at)
            if fingerprint in claimed:
                log.info('Skipping duplicate entry: %s', entry.title)
                report.record_item_result('skipped', item_title=entry.title)
                continue
            claimed.add(fingerprint)
            scheduled.append(entry)

        def _item_settled(outcome: TaskOutcome) -> None:
            entry = scheduled[outcome.index]
            if outcome.ok:
                status = 'cached' if outcome.value.cached else 'success'
                report.record_item_result(status, outcome.duration, item_title=entry.title)
            else:
                log.error('Failed to digest "%s": %s', entry.title, outcome.error)
                report.record_item_result('failed', outcome.duration, error=outcome.error, item_title=entry.title)

        def _pace(outcome: TaskOutcome) -> bool:
            return not (outcome.ok and outcome.value.cached)

        item_scheduler = BoundedScheduler(
            settings.max_concurrent_items,
            delay=settings.delay_between_items_ms / 1000.0,
            name=f'items[{source.name}]',
        )
        outcomes = await item_scheduler.run(
            [functools.partial(pipeline.process, entry) for entry in scheduled],
            on_settled=_item_settled,
            should_delay=_pace,
        )
        digests = [outcome.value.digest for outcome in outcomes if outcome.ok]
        report.record_feed_articles(source.name, len(digests))
        return digests

    def _feed_settled(outcome: TaskOutcome) -> None:
        source = sources[outcome.index]
        if not outcome.ok:
            log.error('Failed to process feed %s: %s', source.name, outcome.error)
        report.record_feed_result(outcome.ok, outcome.error, source.name)

    feed_scheduler = BoundedScheduler(
        settings.max_concurrent_feeds,
        delay=settings.delay_between_feeds_ms / 1000.0,
        name='feeds',
    )
    feed_outcomes = await feed_scheduler.run(
        [functools.partial(_process_source, source) for source in sources],
        on_settled=_feed_settled,
    )

    digests: list[Digest] = [digest for outcome in feed_outcomes if outcome.ok for digest in outcome.value]
    digests.sort(key=lambda digest: digest.published_at, reverse=True)

    if digests:
        try:
            await _publish(digests, settings, now, dry_run)
        except OSError as exc:
            log.error('Failed to publish %s: %s', settings.output_feed, exc)
    else:
        log.warning('No digests were produced; leaving %s untouched', settings.output_feed)

    final = report.finalize()
    log_report_summary(final)
    if settings.enable_reporting and not dry_run:
        try:
            await asyncio.to_thread(save_reports, final, settings.report_output_dir)
        except OSError as exc:
            log.error('Failed to save run report: %s', exc)
    return final


# ****************************************************************************************
# Handle the arguments
# ****************************************************************************************


def handle_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description='Summarize RSS/Atom sources into a digest feed.')
    parser.add_argument('--sources', default=None, help='Path to the source list (OPML or YAML).')
    parser.add_argument('--output', default=None, help='Path of the published RSS file.')
    parser.add_argument('--max-items', type=int, default=None, help='Cap the number of entries taken per feed.')
    parser.add_argument('--feed', type=int, default=None, metavar='INDEX', help='Process only the feed at this position in the source list.')
    parser.add_argument('--skip-cache', action='store_true', help='Ignore cached feeds and digests.')
    parser.add_argument('--dry-run', action='store_true', help='Do not write the feed or report files.')
    parser.add_argument('--show-report', action='store_true', help='Log the Markdown run report when done.')
    parser.add_argument('--mode', choices=PUBLISH_MODES, default=None, help='Publish one aggregate entry or one entry per item.')
    parser.add_argument('-v', '--verbose', action='store_true', help='Enable verbose output to stdout.')
    parser.add_argument('-q', '--quiet', action='store_true', help='Minimal stdout.')
    args = parser.parse_args(argv)

    configure_logging(verbose=args.verbose, quiet=args.quiet)

    log.debug('Checking script requirements...')
    if not args.verbose and not args.quiet:
        log.debug('No output level specified. Defaulting to INFO.')

    log.info('++++++++++++++++++++++++++++++++++++++++++++++')
    log.info('+  %s', os.path.basename(sys.argv[0]))
    log.info('+  Python Version: %s', sys.version.split()[0])
    log.info('+  Today is: %s', date.today())
    log.info('++++++++++++++++++++++++++++++++++++++++++++++')
    return args


def build_settings(args: argparse.Namespace) -> Settings:
    settings = Settings.from_env()
    cache_off = False if args.skip_cache else None
    return settings.with_overrides(
        sources_path=args.sources,
        output_feed=args.output,
        item_limit_override=args.max_items,
        feed_index=args.feed,
        publish_mode=args.mode,
        enable_feed_cache=cache_off,
        enable_digest_cache=cache_off,
    )


# ****************************************************************************************
# Main
# ****************************************************************************************


def main(argv: list[str] | None = None) -> None:
    args = handle_args(argv)
    load_dotenv()
    try:
        settings = build_settings(args)
        report = asyncio.run(run_digest(settings, dry_run=args.dry_run))
    except ConfigError as exc:
        log.error('%s', exc)
        sys.exit(1)

    if args.show_report:
        log.info('\n%s', generate_markdown_report(report))
    log.info('Digest run complete: %d/%d item(s) succeeded', report.items.successful, report.items.total)


if __name__ == '__main__':
    main()
