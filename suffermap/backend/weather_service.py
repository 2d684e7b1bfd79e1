"""WindCache: cache-first hourly wind retrieval for route sample points.
- Memory cache keyed by 4-decimal lat/lon + date, no expiry
- Pending request de-duplication (one request per key in flight)
- Concurrency-capped batch fetch with per-point failure isolation
"""
from __future__ import annotations
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple, TypeVar

from suffermap.backend import config
from suffermap.backend.weather_openmeteo import (
    DateLike,
    OpenMeteoClient,
    RateLimited,
    WindFetchError,
    WindSeries,
    iso_date,
)

log = logging.getLogger('suffermap.weather.service')

T = TypeVar('T')
R = TypeVar('R')
CacheKey = Tuple[float, float, str]


@dataclass
class _Pending:
    event: threading.Event
    result: Optional[WindSeries] = None
    error: Optional[Exception] = None


def pooled_map(fn: Callable[[T], R], items: Sequence[T], concurrency: int) -> List[R]:
    """Apply `fn` to every item with at most `concurrency` calls running at once.

    Results keep input order regardless of completion order.
    """
    if concurrency < 1:
        raise ValueError('concurrency must be >= 1')
    if not items:
        return []
    with ThreadPoolExecutor(max_workers=min(concurrency, len(items)), thread_name_prefix='wind-fetch') as ex:
        return list(ex.map(fn, items))


class WindCache:
    """Session-scoped point forecast cache shared by everything that scores routes."""

    precision = 4

    def __init__(self, client: Optional[OpenMeteoClient] = None):
        self.client = client or OpenMeteoClient()
        self.memory_cache: Dict[CacheKey, WindSeries] = {}
        self.pending: Dict[CacheKey, _Pending] = {}
        self._lock = threading.Lock()

    def key(self, lat: float, lon: float, day: DateLike) -> CacheKey:
        return (round(float(lat), self.precision), round(float(lon), self.precision), iso_date(day))

    def get_cached(self, lat: float, lon: float, day: DateLike) -> Optional[WindSeries]:
        return self.memory_cache.get(self.key(lat, lon, day))

    def __len__(self) -> int:
        return len(self.memory_cache)

    def snapshot(self) -> List[Tuple[CacheKey, WindSeries]]:
        with self._lock:
            return list(self.memory_cache.items())

    def _request(self, key: CacheKey, lat: float, lon: float) -> WindSeries:
        return self.client.fetch_wind_series(lat, lon, key[2])

    def fetch_wind_for_point(self, lat: float, lon: float, day: DateLike) -> WindSeries:
        """Return the 24-hour wind series for a point and day.

        Concurrent callers for the same key share a single provider request and
        all see its outcome. Failures are not cached, so a later call retries.
        """
        key = self.key(lat, lon, day)
        with self._lock:
            cached = self.memory_cache.get(key)
            if cached is not None:
                log.info('[CACHE] hit key=%s', key)
                return cached
            pending = self.pending.get(key)
            owner = pending is None
            if owner:
                pending = _Pending(event=threading.Event())
                self.pending[key] = pending

        if not owner:
            log.info('[QUEUE] duplicate wait key=%s', key)
            pending.event.wait()
            if pending.error is not None:
                raise pending.error
            return pending.result  # type: ignore[return-value]

        log.info('[CACHE] miss key=%s', key)
        try:
            series = self._request(key, lat, lon)
        except Exception as e:
            with self._lock:
                self.pending.pop(key, None)
            pending.error = e
            pending.event.set()
            raise
        with self._lock:
            self.memory_cache[key] = series
            self.pending.pop(key, None)
        pending.result = series
        pending.event.set()
        return series

    def _fetch_or_none(self, lat: float, lon: float, day: str) -> Optional[WindSeries]:
        try:
            return self.fetch_wind_for_point(lat, lon, day)
        except RateLimited as e:
            log.info('[API] rate limited lat=%.4f lon=%.4f: %s', lat, lon, e)
        except WindFetchError as e:
            log.warning('[API] wind fetch failed lat=%.4f lon=%.4f: %s', lat, lon, e)
        return None

    def fetch_many_points(self, points: Sequence, day: DateLike,
                          concurrency: Optional[int] = None) -> List[Optional[WindSeries]]:
        """Fetch wind for many points (objects with `.lat`/`.lon`).

        Returns one slot per input point, in input order; points whose fetch
        failed are None.
        """
        d = iso_date(day)
        limit = config.WIND_FETCH_CONCURRENCY if concurrency is None else concurrency
        results = pooled_map(lambda p: self._fetch_or_none(p.lat, p.lon, d), list(points), limit)
        missing = sum(r is None for r in results)
        if missing:
            log.info('[QUEUE] batch done %d/%d available', len(results) - missing, len(results))
        return results
