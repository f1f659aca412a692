"""sources.py - source registry loading and the adult-content site filter."""
import json
import logging
import os
import time
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from errors import ConfigError
from models import Source

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TIME = 7200


class RegistrySnapshot:
    def __init__(self, sources: List[Source], cache_time: int = DEFAULT_CACHE_TIME):
        self.sources = sources
        self.cache_time = cache_time


def parse_registry(data: Dict[str, Any]) -> RegistrySnapshot:
    if not isinstance(data, dict):
        raise ConfigError('source config must be a JSON object')
    sites = data.get('api_site') or {}
    if not isinstance(sites, dict):
        raise ConfigError('api_site must be an object keyed by source key')
    sources = []
    for key, site in sites.items():
        if not isinstance(site, dict):
            raise ConfigError(f'source {key!r} must be an object')
        try:
            sources.append(Source(key=key, **{k: v for k, v in site.items() if k != 'key'}))
        except PydanticValidationError as exc:
            raise ConfigError(f'invalid source {key!r}: {exc.errors()[0].get("msg")}')
    try:
        cache_time = int(data.get('cache_time') or DEFAULT_CACHE_TIME)
    except (TypeError, ValueError):
        raise ConfigError('cache_time must be an integer')
    return RegistrySnapshot(sources, cache_time)


def load_registry_file(path: str) -> RegistrySnapshot:
    if not os.path.exists(path):
        logger.warning('source config %s not found, registry is empty', path)
        return RegistrySnapshot([])
    try:
        with open(path, encoding='utf-8') as fh:
            data = json.load(fh)
    except json.JSONDecodeError as exc:
        raise ConfigError(f'source config {path} is not valid JSON: {exc}')
    return parse_registry(data)


class SourceRegistry:
    """Holds the configured sources, reloading them at most once per `ttl` seconds."""

    def __init__(self, loader: Callable[[], RegistrySnapshot], ttl: float = 60.0):
        self._loader = loader
        self._ttl = ttl
        self._snapshot: Optional[RegistrySnapshot] = None
        self._loaded_at = 0.0

    @classmethod
    def from_file(cls, path: str, ttl: float = 60.0) -> 'SourceRegistry':
        return cls(lambda: load_registry_file(path), ttl)

    @classmethod
    def from_sources(cls, sources: List[Source], cache_time: int = DEFAULT_CACHE_TIME) -> 'SourceRegistry':
        snapshot = RegistrySnapshot(list(sources), cache_time)
        return cls(lambda: snapshot, ttl=float('inf'))

    def snapshot(self) -> RegistrySnapshot:
        now = time.monotonic()
        if self._snapshot is None or now - self._loaded_at >= self._ttl:
            self._snapshot = self._loader()
            self._loaded_at = now
        return self._snapshot

    def all(self) -> List[Source]:
        return list(self.snapshot().sources)

    def cache_time(self) -> int:
        return self.snapshot().cache_time

    def get(self, key: str) -> Optional[Source]:
        for source in self.available(filter_adult=False):
            if source.key == key:
                return source
        return None

    def available(self, filter_adult: bool = True) -> List[Source]:
        return available_sites(self.all(), filter_adult)


def available_sites(sources: List[Source], filter_adult: bool = True) -> List[Source]:
    enabled = [s for s in sources if not s.disabled]
    if not filter_adult:
        return enabled
    return [s for s in enabled if not s.is_adult]
