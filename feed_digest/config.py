##########################################################################################
#
# Script name: config.py
#
# Description: Immutable run configuration, built once from the environment.
#
##########################################################################################

import os
from dataclasses import dataclass, replace
from datetime import timedelta
from typing import Mapping

from .errors import ConfigError


# ****************************************************************************************
# Global data and configuration
# ****************************************************************************************

PUBLISH_MODES = ('aggregate', 'flat')

DEFAULT_CHANNEL_TITLE = 'Feed Digest'
DEFAULT_CHANNEL_LINK = 'https://example.com/feed-digest'
DEFAULT_CHANNEL_DESCRIPTION = 'Automatic summaries generated from RSS/Atom sources.'


# ****************************************************************************************
# Functions
# ****************************************************************************************


def _parse_number(value: str | None, default: float) -> float:
    if value is None or value == '':
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _parse_int(value: str | None, default: int) -> int:
    return int(_parse_number(value, default))


def _parse_bool(value: str | None, default: bool) -> bool:
    if value is None or value == '':
        return default
    return value.strip().lower() in {'true', '1', 'yes'}


@dataclass(frozen=True)
class Settings:
    sources_path: str = 'Feeds.opml'
    output_feed: str = 'summary.xml'
    feed_cache_dir: str = '.cache/feeds'
    digest_cache_dir: str = '.cache/digests'
    report_output_dir: str = 'reports'
    summary_prompt_file: str = 'summary-prompt.md'

    openai_api_key: str | None = None
    openai_base_url: str | None = None
    openai_model: str = 'gpt-4o-mini'

    max_feeds: int = 10
    max_items_per_feed: int = 1

    feed_cache_ttl_minutes: float = 60
    digest_cache_ttl_minutes: float = 10080

    max_concurrent_feeds: int = 3
    max_concurrent_items: int = 5
    delay_between_feeds_ms: float = 0
    delay_between_items_ms: float = 1000

    max_retries: int = 3
    retry_base_delay_ms: float = 1000
    retry_max_delay_ms: float = 30000

    summary_char_limit: int = 1200
    content_fetch_timeout_ms: float = 10000

    channel_title: str = DEFAULT_CHANNEL_TITLE
    channel_link: str = DEFAULT_CHANNEL_LINK
    channel_description: str = DEFAULT_CHANNEL_DESCRIPTION

    enable_full_article_fetch: bool = True
    enable_feed_cache: bool = True
    enable_digest_cache: bool = True
    enable_reporting: bool = True
    date_filter_enabled: bool = True

    retention_days: int = 10
    publish_mode: str = 'aggregate'
    item_limit_override: int | None = None
    feed_index: int | None = None

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> 'Settings':
        env = os.environ if env is None else env
        defaults = cls()
        delay_items_raw = env.get('DELAY_BETWEEN_ITEMS_MS') or env.get('RATE_LIMIT_DELAY_MS')
        settings = cls(
            sources_path=env.get('SOURCES_FILE') or env.get('FEEDS_OPML') or defaults.sources_path,
            output_feed=env.get('OUTPUT_FEED') or defaults.output_feed,
            feed_cache_dir=env.get('FEED_CACHE_DIR') or defaults.feed_cache_dir,
            digest_cache_dir=env.get('DIGEST_CACHE_DIR') or defaults.digest_cache_dir,
            report_output_dir=env.get('REPORT_OUTPUT_DIR') or defaults.report_output_dir,
            summary_prompt_file=env.get('SUMMARY_PROMPT_FILE') or defaults.summary_prompt_file,
            openai_api_key=env.get('OPENAI_API_KEY') or None,
            openai_base_url=env.get('OPENAI_BASE_URL') or None,
            openai_model=env.get('OPENAI_MODEL') or defaults.openai_model,
            max_feeds=_parse_int(env.get('MAX_FEEDS'), defaults.max_feeds),
            max_items_per_feed=_parse_int(env.get('MAX_ITEMS_PER_FEED'), defaults.max_items_per_feed),
            feed_cache_ttl_minutes=_parse_number(
                env.get('FEED_CACHE_TTL_MINUTES'), defaults.feed_cache_ttl_minutes
            ),
            digest_cache_ttl_minutes=_parse_number(
                env.get('DIGEST_CACHE_TTL_MINUTES'), defaults.digest_cache_ttl_minutes
            ),
            max_concurrent_feeds=_parse_int(env.get('MAX_CONCURRENT_FEEDS'), defaults.max_concurrent_feeds),
            max_concurrent_items=_parse_int(env.get('MAX_CONCURRENT_ITEMS'), defaults.max_concurrent_items),
            delay_between_feeds_ms=_parse_number(
                env.get('DELAY_BETWEEN_FEEDS_MS'), defaults.delay_between_feeds_ms
            ),
            delay_between_items_ms=_parse_number(delay_items_raw, defaults.delay_between_items_ms),
            max_retries=_parse_int(env.get('MAX_RETRIES'), defaults.max_retries),
            retry_base_delay_ms=_parse_number(env.get('RETRY_BASE_DELAY_MS'), defaults.retry_base_delay_ms),
            retry_max_delay_ms=_parse_number(env.get('RETRY_MAX_DELAY_MS'), defaults.retry_max_delay_ms),
            summary_char_limit=_parse_int(env.get('SUMMARY_CHAR_LIMIT'), defaults.summary_char_limit),
            content_fetch_timeout_ms=_parse_number(
                env.get('CONTENT_FETCH_TIMEOUT_MS'), defaults.content_fetch_timeout_ms
            ),
            channel_title=env.get('SUMMARY_FEED_TITLE') or defaults.channel_title,
            channel_link=env.get('SUMMARY_FEED_LINK') or defaults.channel_link,
            channel_description=env.get('SUMMARY_FEED_DESCRIPTION') or defaults.channel_description,
            enable_full_article_fetch=_parse_bool(
                env.get('ENABLE_FULL_ARTICLE_FETCH'), defaults.enable_full_article_fetch
            ),
            enable_feed_cache=_parse_bool(env.get('ENABLE_FEED_CACHE'), defaults.enable_feed_cache),
            enable_digest_cache=_parse_bool(env.get('ENABLE_DIGEST_CACHE'), defaults.enable_digest_cache),
            enable_reporting=_parse_bool(env.get('ENABLE_REPORTING'), defaults.enable_reporting),
            date_filter_enabled=_parse_bool(env.get('DATE_FILTER_ENABLED'), defaults.date_filter_enabled),
            retention_days=_parse_int(env.get('RETENTION_DAYS'), defaults.retention_days),
            publish_mode=(env.get('PUBLISH_MODE') or defaults.publish_mode).strip().lower(),
        )
        settings.validate()
        return settings

    def with_overrides(self, **changes) -> 'Settings':
        updated = replace(self, **{key: value for key, value in changes.items() if value is not None})
        updated.validate()
        return updated

    def validate(self) -> None:
        if self.publish_mode not in PUBLISH_MODES:
            raise ConfigError(f'PUBLISH_MODE must be one of {PUBLISH_MODES}, got {self.publish_mode!r}')
        if self.retention_days < 0:
            raise ConfigError('RETENTION_DAYS must not be negative')
        if self.feed_index is not None and self.feed_index < 0:
            raise ConfigError('Feed index must not be negative')

    def require_credentials(self) -> None:
        if not self.openai_api_key:
            raise ConfigError('Missing required environment variable: OPENAI_API_KEY')

    @property
    def feed_cache_ttl(self) -> timedelta:
        if not self.enable_feed_cache:
            return timedelta(0)
        return timedelta(minutes=max(0.0, self.feed_cache_ttl_minutes))

    @property
    def digest_cache_ttl(self) -> timedelta:
        if not self.enable_digest_cache:
            return timedelta(0)
        return timedelta(minutes=max(0.0, self.digest_cache_ttl_minutes))

    @property
    def content_fetch_timeout(self) -> float:
        return self.content_fetch_timeout_ms / 1000.0

    @property
    def items_per_feed_cap(self) -> int | None:
        if self.item_limit_override is not None:
            return self.item_limit_override
        if self.date_filter_enabled:
            return None
        return self.max_items_per_feed
