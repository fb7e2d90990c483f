##########################################################################################
#
# Script name: cache.py
#
# Description: Durable, TTL-bounded JSON record store split into namespaces.
#
##########################################################################################

import asyncio
import json
import logging
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable

from .config import Settings
from .utils import format_instant, parse_instant, utc_now


# ****************************************************************************************
# Global data and configuration
# ****************************************************************************************

log = logging.getLogger(__name__)

FEEDS = 'feeds'
DIGESTS = 'digests'


# ****************************************************************************************
# Classes
# ****************************************************************************************


@dataclass(frozen=True)
class CacheNamespace:
    name: str
    directory: Path
    ttl: timedelta

    @property
    def enabled(self) -> bool:
        return self.ttl > timedelta(0)

    def path_for(self, key: str) -> Path:
        return self.directory / f'{key}.json'


class CacheStore:
    '''
    Key -> JSON payload store with one file per (namespace, key).

    Every record carries its own `stored_at`, so freshness never depends on
    file-system timestamps. A record older than its namespace TTL reads as
    absent and is simply overwritten by the next `put`.
    '''

    def __init__(
        self,
        namespaces: list[CacheNamespace],
        clock: Callable[[], datetime] = utc_now,
    ):
        self._namespaces = {namespace.name: namespace for namespace in namespaces}
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings, clock: Callable[[], datetime] = utc_now) -> 'CacheStore':
        return cls(
            [
                CacheNamespace(FEEDS, Path(settings.feed_cache_dir), settings.feed_cache_ttl),
                CacheNamespace(DIGESTS, Path(settings.digest_cache_dir), settings.digest_cache_ttl),
            ],
            clock=clock,
        )

    def namespace(self, name: str) -> CacheNamespace:
        return self._namespaces[name]

    async def get(self, namespace: str, key: str) -> Any | None:
        space = self.namespace(namespace)
        if not space.enabled:
            return None
        return await asyncio.to_thread(self._read, space, key)

    async def put(self, namespace: str, key: str, value: Any) -> None:
        space = self.namespace(namespace)
        if not space.enabled:
            return
        await asyncio.to_thread(self._write, space, key, value)

    def _read(self, space: CacheNamespace, key: str) -> Any | None:
        path = space.path_for(key)
        try:
            raw = path.read_text(encoding='utf-8')
        except FileNotFoundError:
            return None
        except OSError as exc:
            log.warning('Failed to read %s cache for %s: %s', space.name, key, exc)
            return None

        try:
            record = json.loads(raw)
            stored_at = parse_instant(record['stored_at'])
            payload = record['payload']
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            log.warning('Discarding corrupted %s cache record %s: %s', space.name, path, exc)
            self._discard(path)
            return None

        if self._clock() - stored_at > space.ttl:
            log.debug('%s cache record %s expired (stored %s).', space.name, key, record['stored_at'])
            return None
        return payload

    def _write(self, space: CacheNamespace, key: str, value: Any) -> None:
        record = {
            'key': key,
            'stored_at': format_instant(self._clock()),
            'ttl_seconds': space.ttl.total_seconds(),
            'payload': value,
        }
        path = space.path_for(key)
        tmp_name = None
        try:
            space.directory.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                'w',
                encoding='utf-8',
                dir=space.directory,
                prefix=f'.{key}.',
                suffix='.tmp',
                delete=False,
            ) as handle:
                tmp_name = handle.name
                json.dump(record, handle, ensure_ascii=False, indent=2)
            os.replace(tmp_name, path)
        except (OSError, TypeError, ValueError) as exc:
            log.warning('Failed to write %s cache for %s: %s', space.name, key, exc)
            if tmp_name:
                self._discard(Path(tmp_name))

    @staticmethod
    def _discard(path: Path) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            log.warning('Could not remove cache file %s: %s', path, exc)
