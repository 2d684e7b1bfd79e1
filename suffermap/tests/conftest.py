import threading
import time
from typing import Callable, Dict, Optional
from urllib.parse import parse_qs, urlsplit

import pytest

from suffermap.backend.weather_openmeteo import OpenMeteoClient

PROVIDER = 'https://wind.test'


def hourly_payload(day: str, speed: float = 10.0, direction: float = 0.0, hours: int = 24) -> dict:
    return {
        "latitude": 0.0,
        "longitude": 0.0,
        "hourly": {
            "time": [f"{day}T{h:02d}:00" for h in range(hours)],
            "windspeed_10m": [speed] * hours,
            "winddirection_10m": [direction] * hours,
        },
    }


class FakeResponse:
    def __init__(self, status_code: int, payload):
        self.status_code = status_code
        self._payload = payload

    def json(self):
        if self._payload is None:
            raise ValueError('no json')
        return self._payload


class FakeSession:
    """Stands in for requests.Session; records calls and concurrency."""

    def __init__(self, responder: Callable[[Dict[str, str]], FakeResponse], delay: float = 0.0,
                 gate: Optional[threading.Event] = None):
        self.responder = responder
        self.delay = delay
        self.gate = gate
        self.started = threading.Event()
        self.calls = 0
        self.urls = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def get(self, url, timeout=None):
        with self._lock:
            self.calls += 1
            self.urls.append(url)
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        self.started.set()
        try:
            if self.gate is not None:
                self.gate.wait(5)
            if self.delay:
                time.sleep(self.delay)
            params = {k: v[0] for k, v in parse_qs(urlsplit(url).query).items()}
            return self.responder(params)
        finally:
            with self._lock:
                self.active -= 1


@pytest.fixture
def payload():
    return hourly_payload


@pytest.fixture
def fake_session():
    def _make(responder=None, **kwargs) -> FakeSession:
        if responder is None:
            def responder(params):
                return FakeResponse(200, hourly_payload(params['start_date']))
        return FakeSession(responder, **kwargs)
    return _make


@pytest.fixture
def fake_response():
    return FakeResponse


@pytest.fixture
def client_for():
    def _make(session) -> OpenMeteoClient:
        return OpenMeteoClient(base_url=PROVIDER, session=session, timeout=5)
    return _make


@pytest.fixture
def provider_url():
    return PROVIDER
