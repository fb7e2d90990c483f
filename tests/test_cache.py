##########################################################################################
#
# Script name: test_cache.py
#
# Description: Cache store freshness, corruption and write-failure behavior.
#
##########################################################################################

import json
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from feed_digest.cache import DIGESTS, FEEDS, CacheNamespace, CacheStore
from feed_digest.config import Settings


START = datetime(2026, 1, 9, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


def _store(tmp_path: Path, clock: FakeClock, ttl: timedelta = timedelta(minutes=10)) -> CacheStore:
    return CacheStore([CacheNamespace(DIGESTS, tmp_path / 'digests', ttl)], clock=clock)


@pytest.mark.asyncio
async def test_record_is_present_until_ttl_elapses(tmp_path: Path) -> None:
    clock = FakeClock(START)
    store = _store(tmp_path, clock)
    await store.put(DIGESTS, 'abc', {'value': 1})

    clock.advance(minutes=10, seconds=-1)
    assert await store.get(DIGESTS, 'abc') == {'value': 1}

    clock.advance(seconds=2)
    assert await store.get(DIGESTS, 'abc') is None


@pytest.mark.asyncio
async def test_expired_record_is_overwritten_by_next_put(tmp_path: Path) -> None:
    clock = FakeClock(START)
    store = _store(tmp_path, clock)
    await store.put(DIGESTS, 'abc', {'value': 1})
    clock.advance(hours=1)
    assert await store.get(DIGESTS, 'abc') is None

    await store.put(DIGESTS, 'abc', {'value': 2})
    assert await store.get(DIGESTS, 'abc') == {'value': 2}


@pytest.mark.asyncio
async def test_zero_ttl_disables_namespace(tmp_path: Path) -> None:
    store = _store(tmp_path, FakeClock(START), ttl=timedelta(0))
    await store.put(DIGESTS, 'abc', {'value': 1})

    assert await store.get(DIGESTS, 'abc') is None
    assert not (tmp_path / 'digests').exists()


@pytest.mark.asyncio
async def test_record_layout_on_disk(tmp_path: Path) -> None:
    store = _store(tmp_path, FakeClock(START))
    await store.put(DIGESTS, 'abc', ['x'])

    record = json.loads((tmp_path / 'digests' / 'abc.json').read_text(encoding='utf-8'))
    assert record['key'] == 'abc'
    assert record['stored_at'] == '2026-01-09T12:00:00.000Z'
    assert record['ttl_seconds'] == 600
    assert record['payload'] == ['x']


@pytest.mark.asyncio
async def test_corrupted_record_reads_as_absent_and_is_removed(tmp_path: Path, caplog) -> None:
    directory = tmp_path / 'digests'
    directory.mkdir()
    broken = directory / 'abc.json'
    broken.write_text('{not json', encoding='utf-8')
    store = _store(tmp_path, FakeClock(START))

    with caplog.at_level(logging.WARNING):
        assert await store.get(DIGESTS, 'abc') is None

    assert not broken.exists()
    assert 'corrupted' in caplog.text


@pytest.mark.asyncio
@pytest.mark.parametrize(
    'record',
    [
        {'key': 'abc', 'stored_at': 123, 'payload': {}},
        {'key': 'abc', 'stored_at': '2026-01-09T12:00:00.000Z'},
        ['stored_at', 'payload'],
    ],
)
async def test_well_formed_json_with_bad_fields_is_removed(tmp_path: Path, record) -> None:
    directory = tmp_path / 'digests'
    directory.mkdir()
    path = directory / 'abc.json'
    path.write_text(json.dumps(record), encoding='utf-8')
    store = _store(tmp_path, FakeClock(START))

    assert await store.get(DIGESTS, 'abc') is None
    assert not path.exists()

    await store.put(DIGESTS, 'abc', {'value': 1})
    assert await store.get(DIGESTS, 'abc') == {'value': 1}


@pytest.mark.asyncio
async def test_write_failure_is_logged_not_raised(tmp_path: Path, caplog) -> None:
    blocker = tmp_path / 'digests'
    blocker.write_text('a file where the directory should be', encoding='utf-8')
    store = _store(tmp_path, FakeClock(START))

    with caplog.at_level(logging.WARNING):
        await store.put(DIGESTS, 'abc', {'value': 1})

    assert 'Failed to write' in caplog.text


@pytest.mark.asyncio
async def test_unknown_namespace_raises(tmp_path: Path) -> None:
    store = _store(tmp_path, FakeClock(START))
    with pytest.raises(KeyError):
        await store.get('missing', 'abc')


def test_from_settings_honours_disabled_caches(tmp_path: Path) -> None:
    settings = Settings(
        feed_cache_dir=str(tmp_path / 'feeds'),
        digest_cache_dir=str(tmp_path / 'digests'),
        enable_digest_cache=False,
    )
    store = CacheStore.from_settings(settings)

    assert store.namespace(FEEDS).enabled
    assert store.namespace(FEEDS).ttl == timedelta(minutes=60)
    assert not store.namespace(DIGESTS).enabled
