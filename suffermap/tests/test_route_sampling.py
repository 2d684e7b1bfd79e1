import pytest

from suffermap.backend.route_sampling import (
    Coordinate,
    InsufficientPoints,
    InvalidFormat,
    NoPoints,
    RouteParseError,
    load_gpx,
    parse_route,
    route_feature,
    route_summary,
    sample_route,
)

HEADER = '<?xml version="1.0" encoding="UTF-8"?>\n<gpx version="1.1" creator="tests" xmlns="http://www.topografix.com/GPX/1/1">'


def gpx_doc(body: str) -> str:
    return f"{HEADER}{body}</gpx>"


def trk(points, name="ride") -> str:
    pts = ''.join(
        f'<trkpt lat="{lat}" lon="{lon}">' + (f'<ele>{ele}</ele>' if ele is not None else '') + '</trkpt>'
        for lat, lon, ele in points
    )
    return f"<trk><name>{name}</name><trkseg>{pts}</trkseg></trk>"


def test_parse_track_points_in_order():
    doc = gpx_doc(trk([(0, 0, 10), (1, 0, 20), (2, 0.5, 15)]))
    route = parse_route(doc)
    assert route.coordinates == (Coordinate(0.0, 0.0), Coordinate(0.0, 1.0), Coordinate(0.5, 2.0))
    assert route.elevations == (10.0, 20.0, 15.0)
    assert route.has_elevation
    assert route.name == 'ride'


def test_parse_accepts_bytes():
    doc = gpx_doc(trk([(0, 0, None), (1, 0, None)])).encode('utf-8')
    assert len(parse_route(doc)) == 2


def test_invalid_markup_fails_with_invalid_format():
    with pytest.raises(InvalidFormat):
        parse_route('<gpx><trk><trkseg>')
    with pytest.raises(RouteParseError):
        parse_route('this is not xml <')


def test_zero_points_fails_with_no_points():
    with pytest.raises(NoPoints):
        parse_route(gpx_doc(''))
    with pytest.raises(NoPoints):
        parse_route(gpx_doc('<trk><trkseg></trkseg></trk>'))


def test_one_point_fails_with_insufficient_points():
    with pytest.raises(InsufficientPoints):
        parse_route(gpx_doc(trk([(0, 0, None)])))


def test_non_finite_points_are_dropped():
    doc = gpx_doc(trk([(0, 0, 1), ('nan', 0, 2), (1, 0, 3)]))
    route = parse_route(doc)
    assert route.coordinates == (Coordinate(0.0, 0.0), Coordinate(0.0, 1.0))
    assert route.elevations == (1.0, 3.0)

    with pytest.raises(InsufficientPoints):
        parse_route(gpx_doc(trk([(0, 0, None), ('nan', 'inf', None)])))


def test_unparseable_coordinates_are_dropped():
    doc = gpx_doc(trk([(0, 0, 5), ('abc', 0, 6), ('', 0, 7), (1, 'x', 8), (2, 0, 9)]))
    route = parse_route(doc)
    assert route.coordinates == (Coordinate(0.0, 0.0), Coordinate(0.0, 2.0))
    assert route.elevations == (5.0, 9.0)
    assert route.name == 'ride'

    rte = gpx_doc('<rte><rtept lat="1" lon="2"/><rtept lat="" lon="3"/><rtept lat="5" lon="6"/></rte>')
    assert parse_route(rte).coordinates == (Coordinate(2.0, 1.0), Coordinate(6.0, 5.0))

    with pytest.raises(InsufficientPoints):
        parse_route(gpx_doc(trk([(0, 0, None), ('abc', 1, None)])))


def test_track_segments_are_concatenated_in_order():
    doc = gpx_doc(
        '<trk><name>two-part</name>'
        '<trkseg><trkpt lat="0" lon="0"/><trkpt lat="1" lon="0"/></trkseg>'
        '<trkseg><trkpt lat="2" lon="1"/><trkpt lat="3" lon="1"/></trkseg>'
        '</trk>'
    )
    route = parse_route(doc)
    assert route.coordinates == (
        Coordinate(0.0, 0.0), Coordinate(0.0, 1.0), Coordinate(1.0, 2.0), Coordinate(1.0, 3.0),
    )
    assert route.name == 'two-part'


def test_longest_track_wins():
    doc = gpx_doc(
        trk([(0, 0, None), (0, 1, None)], name="short")
        + trk([(5, 5, None), (5, 6, None), (5, 7, None)], name="long")
    )
    route = parse_route(doc)
    assert len(route) == 3
    assert route.coordinates[0] == Coordinate(5.0, 5.0)


def test_tied_tracks_keep_first():
    doc = gpx_doc(trk([(0, 0, None), (0, 1, None)]) + trk([(5, 5, None), (5, 6, None)]))
    assert parse_route(doc).coordinates[0] == Coordinate(0.0, 0.0)


def test_route_points_used_when_no_tracks():
    doc = gpx_doc('<rte><name>planned</name><rtept lat="1" lon="2"/><rtept lat="3" lon="4"/></rte>')
    route = parse_route(doc)
    assert route.coordinates == (Coordinate(2.0, 1.0), Coordinate(4.0, 3.0))
    assert route.elevations == ()
    assert not route.has_elevation


def test_partial_elevation_is_discarded():
    route = parse_route(gpx_doc(trk([(0, 0, 10), (1, 0, None), (2, 0, 30)])))
    assert len(route) == 3
    assert route.elevations == ()


def test_load_gpx_reads_file(tmp_path):
    p = tmp_path / 'ride.gpx'
    p.write_text(gpx_doc(trk([(45.0, 7.0, 200), (45.01, 7.0, 210)])), encoding='utf-8')
    route = load_gpx(str(p))
    assert route.coordinates[1] == Coordinate(7.0, 45.01)


def test_sample_route_every_step_including_ends():
    route = parse_route(gpx_doc(trk([(0, 0, None), (0.5, 0, None)])))
    samples = sample_route(route, step_km=10.0)
    # 55.6 km -> marks at 10..50 km plus both ends
    assert len(samples) == 7
    assert samples[0] == route.coordinates[0]
    assert samples[-1] == route.coordinates[-1]
    lats = [s.lat for s in samples]
    assert lats == sorted(lats)


def test_sample_route_rejects_bad_step():
    route = parse_route(gpx_doc(trk([(0, 0, None), (1, 0, None)])))
    with pytest.raises(ValueError):
        sample_route(route, step_km=0)


def test_route_summary_distance_and_gain():
    route = parse_route(gpx_doc(trk([(0, 0, 100), (1, 0, 150), (2, 0, 120), (3, 0, 200)])))
    summary = route_summary(route)
    assert summary['distance_km'] == pytest.approx(3 * 111.19493, rel=1e-5)
    assert summary['elevation_gain_m'] == pytest.approx(130.0)
    assert summary['points'] == 4


def test_route_feature_is_lon_lat_linestring():
    route = parse_route(gpx_doc(trk([(10, 20, None), (11, 21, None)])))
    feat = route_feature(route)
    assert feat['geometry']['type'] == 'LineString'
    assert feat['geometry']['coordinates'] == [[20.0, 10.0], [21.0, 11.0]]
