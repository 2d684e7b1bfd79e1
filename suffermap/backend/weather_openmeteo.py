"""Open-Meteo hourly wind forecast retrieval.

One GET per (location, day) returns 24 hourly wind samples. Responses are
classified into success, rate limit (HTTP 429 or an error payload whose reason
mentions a limit), or generic failure. The client tracks whether the provider
is currently throttling us and notifies subscribers when that flips.
"""
from __future__ import annotations
import logging
import threading
from dataclasses import dataclass
from datetime import date as _date
from typing import Any, Callable, Dict, List, Optional, Union

import pandas as pd
import requests

from suffermap.backend import config

log = logging.getLogger('suffermap.weather.openmeteo')

HOURS_PER_DAY = 24
DateLike = Union[str, _date]


class WindFetchError(Exception):
    pass


class FetchFailed(WindFetchError):
    pass


class RateLimited(WindFetchError):
    pass


class EmptyResult(WindFetchError):
    pass


@dataclass(frozen=True)
class HourlyWindEntry:
    time: str
    speed_kmh: float
    direction_deg: float  # meteorological: where the wind blows FROM

    def to_dict(self) -> Dict[str, Any]:
        return {"time": self.time, "speed_kmh": self.speed_kmh, "direction_deg": self.direction_deg}


# Fixed length 24, index = hour of day, None for hours the provider did not report
WindSeries = List[Optional[HourlyWindEntry]]


def iso_date(d: DateLike) -> str:
    if isinstance(d, _date):
        return d.isoformat()
    s = str(d).strip()
    # Validates YYYY-MM-DD
    return _date.fromisoformat(s).isoformat()


def build_forecast_url(base_url: str, lat: float, lon: float, day: DateLike) -> str:
    d = iso_date(day)
    params = (
        f"latitude={lat:.6f}&longitude={lon:.6f}"
        "&hourly=windspeed_10m,winddirection_10m"
        f"&start_date={d}&end_date={d}"
        "&timezone=auto&wind_speed_unit=kmh"
    )
    return f"{base_url}/v1/forecast?{params}"


def _is_limit_payload(payload: Any) -> bool:
    if not isinstance(payload, dict) or not payload.get('error'):
        return False
    reason = payload.get('reason')
    return isinstance(reason, str) and 'limit' in reason.lower()


def _to_float(v: Any) -> Optional[float]:
    if v is None:
        return None
    try:
        f = float(v)
    except (TypeError, ValueError):
        return None
    return None if pd.isna(f) else f


def decode_wind_series(payload: Dict[str, Any]) -> WindSeries:
    """Turn an hourly forecast payload into a 24-slot series.

    Entries are placed by the hour of their timestamp; hours that are missing
    or carry null speed/direction stay None. Raises EmptyResult when the
    payload holds no timestamps at all.
    """
    hourly = (payload or {}).get('hourly') or {}
    times = hourly.get('time') or []
    speeds = hourly.get('windspeed_10m') or []
    dirs = hourly.get('winddirection_10m') or []
    if not times:
        raise EmptyResult('No wind data available for this date')

    stamps = pd.to_datetime(pd.Series(times, dtype='object'), errors='coerce')
    series: WindSeries = [None] * HOURS_PER_DAY
    for i, t in enumerate(times):
        speed = _to_float(speeds[i]) if i < len(speeds) else None
        direction = _to_float(dirs[i]) if i < len(dirs) else None
        if speed is None or direction is None:
            continue
        ts = stamps.iloc[i]
        hour = int(ts.hour) if not pd.isna(ts) else i
        if not 0 <= hour < HOURS_PER_DAY:
            continue
        if series[hour] is not None:
            # DST fall-back repeats an hour; keep the first
            continue
        series[hour] = HourlyWindEntry(
            time=str(t),
            speed_kmh=round(max(0.0, speed), 1),
            direction_deg=float(round(direction) % 360),
        )
    log.info('[WIND] decoded %d/%d hours range=%s..%s', sum(e is not None for e in series), len(times), times[0], times[-1])
    return series


def hour_label(series: Optional[WindSeries], hour_index: int) -> str:
    """Return "HH:MM" for a slot, taken from the entry timestamp when present."""
    entry = series[hour_index] if series and 0 <= hour_index < len(series) else None
    if entry is not None and 'T' in entry.time:
        return entry.time.split('T', 1)[1][:5]
    return f"{hour_index:02d}:00"


class OpenMeteoClient:
    """HTTP access to the forecast endpoint plus the rate-limit side channel."""

    def __init__(self, base_url: Optional[str] = None, session: Optional[requests.Session] = None,
                 timeout: Optional[float] = None):
        self.base_url = (base_url or config.WIND_PROVIDER_URL).rstrip('/')
        self.session = session or requests.Session()
        self.timeout = config.WIND_REQUEST_TIMEOUT if timeout is None else timeout
        self._lock = threading.Lock()
        self._rate_limited = False
        self._listeners: List[Callable[[bool], None]] = []

    @property
    def rate_limited(self) -> bool:
        return self._rate_limited

    def subscribe(self, callback: Callable[[bool], None]) -> Callable[[], None]:
        """Register `callback(rate_limited)`; returns a function that unsubscribes it."""
        with self._lock:
            self._listeners.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._listeners:
                    self._listeners.remove(callback)
        return _unsubscribe

    def _set_rate_limited(self, flag: bool) -> None:
        with self._lock:
            if self._rate_limited == flag:
                return
            self._rate_limited = flag
            listeners = list(self._listeners)
        if flag:
            log.warning('[API] provider is rate limiting requests')
        else:
            log.info('[API] rate limit cleared')
        for cb in listeners:
            try:
                cb(flag)
            except Exception:
                log.exception('[API] rate-limit listener failed')

    def forecast_url(self, lat: float, lon: float, day: DateLike) -> str:
        return build_forecast_url(self.base_url, lat, lon, day)

    def get_json(self, url: str) -> Dict[str, Any]:
        """GET `url` and return the decoded JSON body, classifying failures."""
        log.info('[API] start %s', url)
        try:
            resp = self.session.get(url, timeout=self.timeout)
        except requests.RequestException as e:
            raise FetchFailed(f'Request failed: {e}') from e

        if resp.status_code == 429:
            self._set_rate_limited(True)
            raise RateLimited('Open-Meteo API call limit exceeded (HTTP 429)')

        try:
            payload = resp.json()
        except ValueError:
            payload = None

        if _is_limit_payload(payload):
            self._set_rate_limited(True)
            raise RateLimited(f"Open-Meteo API call limit exceeded: {payload['reason']}")
        if resp.status_code != 200:
            raise FetchFailed(f'HTTP {resp.status_code}')
        if not isinstance(payload, dict):
            raise FetchFailed('Response body is not a JSON object')
        if payload.get('error'):
            raise FetchFailed(f"Provider error: {payload.get('reason', 'unknown')}")

        self._set_rate_limited(False)
        return payload

    def fetch_wind_series(self, lat: float, lon: float, day: DateLike) -> WindSeries:
        payload = self.get_json(self.forecast_url(lat, lon, day))
        try:
            return decode_wind_series(payload)
        except (KeyError, TypeError, IndexError, AttributeError, ValueError) as e:
            raise FetchFailed(f'Malformed forecast payload: {e}') from e
