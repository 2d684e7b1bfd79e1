from flask import Flask, jsonify, request
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
import logging
import math
import threading

from suffermap.backend import config
from suffermap.backend.glyph_wind import ArrowCache, ViewportBounds, arrows_geojson, build_grid
from suffermap.backend.route_sampling import (
    Route,
    RouteParseError,
    load_gpx,
    parse_route,
    route_feature,
    route_summary,
    sample_route,
)
from suffermap.backend.scoring import score_route, segments_geojson
from suffermap.backend.weather_openmeteo import (
    EmptyResult,
    OpenMeteoClient,
    RateLimited,
    WindFetchError,
    hour_label,
    iso_date,
)
from suffermap.backend.weather_service import WindCache

log = logging.getLogger('suffermap.app')


@dataclass
class SessionState:
    """Everything that lives for one application session."""
    client: OpenMeteoClient
    wind_cache: WindCache
    arrow_cache: ArrowCache
    route: Optional[Route] = None
    lock: threading.Lock = field(default_factory=threading.Lock)

    def replace_route(self, route: Route) -> None:
        with self.lock:
            self.route = route

    def current_route(self) -> Optional[Route]:
        with self.lock:
            return self.route


class InvalidQuery(ValueError):
    pass


def _flag(name: str, default: bool) -> bool:
    raw = request.args.get(name)
    if raw is None:
        return default
    return str(raw).strip().lower() in ('1', 'true', 'yes', 'on')


def _float_arg(name: str, default: Optional[float] = None) -> float:
    raw = request.args.get(name)
    if raw is None or raw == '':
        if default is None:
            raise InvalidQuery(f"Missing '{name}'")
        return default
    try:
        value = float(raw)
    except ValueError:
        raise InvalidQuery(f"Invalid '{name}': {raw!r}") from None
    if not math.isfinite(value):
        raise InvalidQuery(f"Invalid '{name}': {raw!r}")
    return value


def _int_arg(name: str, default: Optional[int] = None) -> int:
    return int(_float_arg(name, None if default is None else float(default)))


def _date_arg() -> str:
    raw = request.args.get('date')
    if not raw:
        raise InvalidQuery("Missing 'date'")
    try:
        return iso_date(raw)
    except ValueError:
        raise InvalidQuery('Invalid date; expected YYYY-MM-DD') from None


def _hour_arg() -> int:
    hour = _int_arg('hour', 12)
    if not 0 <= hour <= 23:
        raise InvalidQuery("'hour' must be within 0..23")
    return hour


def _route_payload(route: Route) -> Dict[str, Any]:
    return {"route": route_feature(route), "summary": route_summary(route)}


def create_app(state: Optional[SessionState] = None) -> Flask:
    """Build the Flask app around one session's caches and route."""
    if state is None:
        client = OpenMeteoClient()
        state = SessionState(client=client, wind_cache=WindCache(client), arrow_cache=ArrowCache(client))

    app = Flask(__name__)
    app.extensions['suffermap'] = state

    if config.GPX_PATH:
        try:
            state.replace_route(load_gpx(config.GPX_PATH))
            log.info('[ROUTE] restored %s', config.GPX_PATH)
        except (OSError, RouteParseError) as e:
            log.warning('[ROUTE] could not load GPX_PATH=%s: %s', config.GPX_PATH, e)

    @app.errorhandler(InvalidQuery)
    def _bad_request(e: InvalidQuery):
        return jsonify({"error": str(e)}), 400

    @app.route('/api/route', methods=['POST'])
    def upload_route():
        f = request.files.get('gpx')
        raw = f.read() if f is not None else request.get_data()
        if not raw:
            return jsonify({"error": "No GPX data uploaded", "kind": "no_data"}), 400
        try:
            route = parse_route(raw)
        except RouteParseError as e:
            # Previous route stays active
            log.warning('[ROUTE] upload rejected: %s', e)
            return jsonify({"error": str(e), "kind": e.kind}), 400
        state.replace_route(route)
        return jsonify(_route_payload(route))

    @app.route('/api/route', methods=['GET'])
    def get_route():
        route = state.current_route()
        if route is None:
            return jsonify({"error": "No route loaded"}), 404
        return jsonify(_route_payload(route))

    @app.route('/api/score')
    def api_score():
        route = state.current_route()
        if route is None:
            return jsonify({"error": "No route loaded"}), 404
        day = _date_arg()
        hour = _hour_arg()
        include_wind = _flag('wind', True)
        include_elevation = _flag('elevation', True)
        step_km = _float_arg('step_km', config.WIND_SAMPLE_STEP_KM)
        if step_km <= 0:
            raise InvalidQuery("'step_km' must be > 0")

        samples = sample_route(route, step_km=step_km) if include_wind else []
        series = state.wind_cache.fetch_many_points(samples, day) if samples else []
        scores = score_route(
            route, samples, series, hour,
            elevation_profile=route.elevations,
            include_elevation=include_elevation,
            include_wind=include_wind,
        )
        first = next((s for s in series if s is not None), None)
        return jsonify({
            "segments": segments_geojson(scores),
            "hour": hour,
            "hour_label": hour_label(first, hour),
            "samples": len(samples),
            "unavailable_samples": sum(s is None for s in series),
            "rate_limited": state.client.rate_limited,
        })

    @app.route('/api/wind')
    def api_wind():
        lat = _float_arg('lat')
        lon = _float_arg('lon')
        day = _date_arg()
        try:
            series = state.wind_cache.fetch_wind_for_point(lat, lon, day)
        except RateLimited as e:
            return jsonify({"error": str(e), "rate_limited": True}), 429
        except EmptyResult as e:
            return jsonify({"error": str(e)}), 404
        except WindFetchError as e:
            return jsonify({"error": str(e)}), 502
        return jsonify({
            "date": day,
            "hourly": [e.to_dict() if e is not None else None for e in series],
            "rate_limited": state.client.rate_limited,
        })

    @app.route('/api/arrows')
    def api_arrows():
        day = _date_arg()
        hour = _hour_arg()
        bounds = ViewportBounds(
            south=_float_arg('south'), west=_float_arg('west'),
            north=_float_arg('north'), east=_float_arg('east'),
        )
        cols = _int_arg('cols', config.ARROW_GRID_COLS)
        rows = _int_arg('rows', config.ARROW_GRID_ROWS)
        if cols < 1 or rows < 1:
            raise InvalidQuery("'cols' and 'rows' must be >= 1")
        grid = build_grid(bounds, cols, rows)
        state.arrow_cache.load_grid_points(grid, day)
        glyphs = state.arrow_cache.renderable_arrows(grid, day, hour)
        return jsonify({
            "arrows": arrows_geojson(glyphs),
            "grid_points": len(grid),
            "rate_limited": state.client.rate_limited,
        })

    @app.route('/api/status')
    def api_status():
        return jsonify({"rate_limited": state.client.rate_limited})

    return app


def main() -> None:
    logging.basicConfig(level=config.LOG_LEVEL, format='[%(levelname)s] %(message)s')
    app = create_app()
    app.run(host='127.0.0.1', port=5000, debug=False, threaded=True)


if __name__ == '__main__':
    main()
