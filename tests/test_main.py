##########################################################################################
#
# Script name: test_main.py
#
# Description: End-to-end run driver behavior with fake network and summarizer.
#
##########################################################################################

import logging
from datetime import datetime, timezone
from pathlib import Path

import pytest
import requests

from feed_digest.config import Settings
from feed_digest.content import ExtractedContent
from feed_digest.errors import ConfigError, SourceConfigError
from feed_digest.main import CONSOLE_HANDLER, build_settings, handle_args, run_digest
from feed_digest.models import PublishedEntry, Source
from feed_digest.render import read_published, write_published


NOW = datetime(2026, 1, 9, 15, 0, tzinfo=timezone.utc)

OPML = '''<?xml version="1.0" encoding="UTF-8"?>
<opml version="1.0">
  <body>
    <outline text="Alpha" xmlUrl="https://alpha.example/rss"/>
    <outline text="Mirror" xmlUrl="https://mirror.example/rss"/>
    <outline text="Broken" xmlUrl="https://broken.example/rss"/>
  </body>
</opml>
'''

RSS = b'''<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>Alpha</title>
    <item>
      <title>Model release</title>
      <link>https://alpha.example/release</link>
      <description>Feed summary of the release.</description>
      <pubDate>Fri, 09 Jan 2026 08:00:00 GMT</pubDate>
    </item>
    <item>
      <title>Benchmarks</title>
      <link>https://alpha.example/benchmarks</link>
      <description>Feed summary of the benchmarks.</description>
      <pubDate>Fri, 09 Jan 2026 10:00:00 GMT</pubDate>
    </item>
    <item>
      <title>Old news</title>
      <link>https://alpha.example/old</link>
      <description>Yesterday.</description>
      <pubDate>Thu, 08 Jan 2026 10:00:00 GMT</pubDate>
    </item>
  </channel>
</rss>
'''


class FakeSummarizer:
    def __init__(self):
        self.calls = 0

    async def generate(self, system_prompt: str, user_prompt: str) -> str:
        self.calls += 1
        return 'Generated text.'

    async def generate_json(self, system_prompt: str, user_prompt: str):
        self.calls += 1
        return [{'title': 'Point', 'summary': 'A key point.'}]


class FakeNetwork:
    def __init__(self):
        self.feed_calls: list[str] = []

    def fetch_feed(self, source: Source, timeout: float) -> bytes:
        self.feed_calls.append(source.endpoint)
        if 'broken' in source.endpoint:
            response = requests.Response()
            response.status_code = 500
            raise requests.HTTPError('500 Server Error', response=response)
        return RSS

    async def fetch_content(self, url: str) -> ExtractedContent:
        if url.endswith('benchmarks'):
            raise requests.ConnectionError('connection reset')
        text = 'Full article text. ' * 30
        return ExtractedContent(text=text.strip(), paragraphs=[text], word_count=90)


def _settings(tmp_path: Path, **overrides) -> Settings:
    sources = tmp_path / 'Feeds.opml'
    sources.write_text(OPML, encoding='utf-8')
    values = dict(
        sources_path=str(sources),
        output_feed=str(tmp_path / 'summary.xml'),
        feed_cache_dir=str(tmp_path / 'cache' / 'feeds'),
        digest_cache_dir=str(tmp_path / 'cache' / 'digests'),
        report_output_dir=str(tmp_path / 'reports'),
        summary_prompt_file=str(tmp_path / 'no-prompt.md'),
        max_retries=0,
        delay_between_items_ms=0,
    )
    values.update(overrides)
    return Settings(**values)


async def _run(settings: Settings, network: FakeNetwork, summarizer=None, **kwargs):
    return await run_digest(
        settings,
        summarizer=summarizer or FakeSummarizer(),
        fetch_feed=network.fetch_feed,
        fetch_content=network.fetch_content,
        now=NOW,
        **kwargs,
    )


@pytest.mark.asyncio
async def test_failing_source_does_not_stop_the_others(tmp_path: Path) -> None:
    settings = _settings(tmp_path)

    report = await _run(settings, FakeNetwork())

    assert (report.feeds.total, report.feeds.successful, report.feeds.failed) == (3, 2, 1)
    assert report.feeds.errors[0].name == 'Broken'
    assert report.items.successful == 2
    assert report.items.skipped == 2
    assert report.items.failed == 0
    assert report.feeds.with_articles == 1

    published = read_published(settings.output_feed)
    assert [entry.id for entry in published] == ['digest-2026-01-09']
    assert 'Model release' in published[0].description
    assert 'Benchmarks' in published[0].description
    assert 'Old news' not in published[0].description
    assert len(list((tmp_path / 'reports').glob('execution-*.json'))) == 1


@pytest.mark.asyncio
async def test_rerun_uses_cached_digests_and_keeps_history(tmp_path: Path) -> None:
    settings = _settings(tmp_path, publish_mode='flat')
    write_published(
        [PublishedEntry(id='older', title='Older', link='https://x', published_at=datetime(2026, 1, 5, tzinfo=timezone.utc))],
        settings.output_feed,
        settings,
        now=NOW,
    )
    await _run(settings, FakeNetwork())

    summarizer = FakeSummarizer()
    report = await _run(settings, FakeNetwork(), summarizer=summarizer)

    assert summarizer.calls == 0
    assert report.items.cached == 2
    published = read_published(settings.output_feed)
    assert len(published) == 3
    assert published[-1].id == 'older'


@pytest.mark.asyncio
async def test_dry_run_writes_nothing(tmp_path: Path) -> None:
    settings = _settings(tmp_path)

    report = await _run(settings, FakeNetwork(), dry_run=True)

    assert report.items.successful == 2
    assert not Path(settings.output_feed).exists()
    assert not (tmp_path / 'reports').exists()


@pytest.mark.asyncio
async def test_no_digests_leaves_output_untouched(tmp_path: Path) -> None:
    settings = _settings(tmp_path, date_filter_enabled=True)
    later = datetime(2026, 2, 1, tzinfo=timezone.utc)

    report = await run_digest(
        settings,
        summarizer=FakeSummarizer(),
        fetch_feed=FakeNetwork().fetch_feed,
        fetch_content=FakeNetwork().fetch_content,
        now=later,
    )

    assert report.items.total == 0
    assert not Path(settings.output_feed).exists()


@pytest.mark.asyncio
async def test_missing_credentials_abort_before_network(tmp_path: Path) -> None:
    settings = _settings(tmp_path, openai_api_key=None)
    network = FakeNetwork()

    with pytest.raises(ConfigError):
        await run_digest(settings, fetch_feed=network.fetch_feed, fetch_content=network.fetch_content, now=NOW)

    assert network.feed_calls == []


@pytest.mark.asyncio
async def test_missing_source_list_is_fatal(tmp_path: Path) -> None:
    settings = _settings(tmp_path, sources_path=str(tmp_path / 'absent.opml'))

    with pytest.raises(SourceConfigError):
        await _run(settings, FakeNetwork())


def test_cli_flags_override_environment(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv('PUBLISH_MODE', 'aggregate')
    monkeypatch.setenv('OUTPUT_FEED', 'env.xml')
    monkeypatch.chdir(tmp_path)

    args = handle_args(['--mode', 'flat', '--max-items', '2', '--skip-cache', '-q'])
    settings = build_settings(args)

    assert settings.publish_mode == 'flat'
    assert settings.output_feed == 'env.xml'
    assert settings.item_limit_override == 2
    assert settings.enable_feed_cache is False
    assert settings.enable_digest_cache is False


@pytest.mark.asyncio
async def test_unwritable_output_still_finalizes_and_saves_report(tmp_path: Path) -> None:
    blocker = tmp_path / 'blocker'
    blocker.write_text('not a directory', encoding='utf-8')
    settings = _settings(tmp_path, output_feed=str(blocker / 'summary.xml'))

    report = await _run(settings, FakeNetwork())

    assert report.items.successful == 2
    assert blocker.read_text(encoding='utf-8') == 'not a directory'
    assert len(list((tmp_path / 'reports').glob('execution-*.json'))) == 1


def test_feed_flag_and_repeated_logging_setup(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.chdir(tmp_path)

    handle_args(['-q'])
    args = handle_args(['--feed', '1', '-q'])
    settings = build_settings(args)

    consoles = [handler for handler in logging.getLogger().handlers if handler.get_name() == CONSOLE_HANDLER]
    assert len(consoles) == 1
    assert settings.feed_index == 1
