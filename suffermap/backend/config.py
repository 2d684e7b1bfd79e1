"""Runtime settings read from the environment once at import."""
import os


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f'{name} must be an integer, got {raw!r}') from None


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f'{name} must be a number, got {raw!r}') from None


WIND_PROVIDER_URL = os.environ.get('WIND_PROVIDER_URL', 'https://api.open-meteo.com').rstrip('/')
# 3 parallel requests stays under the provider's burst limit
WIND_FETCH_CONCURRENCY = max(1, _env_int('WIND_FETCH_CONCURRENCY', 3))
WIND_REQUEST_TIMEOUT = _env_float('WIND_REQUEST_TIMEOUT', 30.0)
WIND_SAMPLE_STEP_KM = _env_float('WIND_SAMPLE_STEP_KM', 5.0)
ARROW_GRID_COLS = max(1, _env_int('ARROW_GRID_COLS', 6))
ARROW_GRID_ROWS = max(1, _env_int('ARROW_GRID_ROWS', 5))
GPX_PATH = os.environ.get('GPX_PATH') or None
LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO').upper()
