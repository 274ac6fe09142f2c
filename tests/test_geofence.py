from __future__ import annotations

from types import SimpleNamespace

import pytest

from fieldtask.domain.errors import ValidationError
from fieldtask.domain.geofence import (
    BOUNDARY_TOLERANCE_M,
    MAX_FENCES_PER_ENTITY,
    CircleFence,
    FenceCenter,
    FenceSource,
    LatLng,
    PolygonFence,
    boundary_warnings,
    collect_fences,
    haversine_meters,
    is_inside_any_fence,
    parse_fence,
    parse_fences,
    point_in_circle,
    point_in_polygon,
    resolve_effective_fences,
)

SQUARE = [(-0.01, -0.01), (0.01, -0.01), (0.01, 0.01), (-0.01, 0.01)]


def _circle(lat: float, lng: float, radius_m: float) -> CircleFence:
    return CircleFence(center=FenceCenter(lat=lat, lng=lng), radius_m=radius_m)


def test_circle_scenario_near_and_far_points() -> None:
    fence = _circle(0, 0, 100)
    assert is_inside_any_fence(LatLng(lat=0, lng=0.0009), [fence]) is True
    assert is_inside_any_fence(LatLng(lat=0, lng=0.002), [fence]) is False


def test_circle_boundary_is_inclusive() -> None:
    point = LatLng(lat=0.0005, lng=0.0005)
    distance = haversine_meters(LatLng(lat=0, lng=0), point)
    assert point_in_circle(point, _circle(0, 0, distance)) is True
    assert point_in_circle(point, _circle(0, 0, distance - 1)) is False


def test_circle_tolerance_band_is_the_outer_edge() -> None:
    point = LatLng(lat=0.0005, lng=0.0005)
    distance = haversine_meters(LatLng(lat=0, lng=0), point)
    assert point_in_circle(point, _circle(0, 0, distance - BOUNDARY_TOLERANCE_M + 0.01)) is True
    assert point_in_circle(point, _circle(0, 0, distance - BOUNDARY_TOLERANCE_M - 0.01)) is False


def test_polygon_ray_casting_with_implicit_closure() -> None:
    assert point_in_polygon(LatLng(lat=0, lng=0), SQUARE) is True
    assert point_in_polygon(LatLng(lat=0.02, lng=0), SQUARE) is False
    assert point_in_polygon(LatLng(lat=0, lng=0), [(0, 0), (1, 1)]) is False
    assert point_in_polygon(LatLng(lat=0, lng=0), [["x", "y"], [1, 1], [2, 2]]) is False


def test_any_fence_is_or_across_kinds() -> None:
    fences = [_circle(10, 10, 50), PolygonFence(ring=SQUARE)]
    assert is_inside_any_fence(LatLng(lat=0.001, lng=0.001), fences) is True
    assert is_inside_any_fence(LatLng(lat=5, lng=5), fences) is False
    assert is_inside_any_fence(LatLng(lat=0, lng=0), []) is False


def test_parse_fence_accepts_aliases_and_rejects_malformed() -> None:
    circle = parse_fence({"type": "circle", "center": {"lat": 1, "lon": 2}, "radius": 30})
    assert isinstance(circle, CircleFence)
    assert circle.center.lng == 2
    assert circle.radius_m == 30

    polygon = parse_fence({"type": "polygon", "polygon": [[0, 0], [1, 0], [1, 1]]})
    assert isinstance(polygon, PolygonFence)
    assert len(polygon.ring) == 3

    with pytest.raises(ValidationError):
        parse_fence({"type": "circle", "center": {"lat": 0, "lng": 0}, "radius_m": 0})
    with pytest.raises(ValidationError):
        parse_fence({"type": "polygon", "ring": [[0, 0], [1, 1]]})
    with pytest.raises(ValidationError):
        parse_fence({"type": "hexagon"})


def test_parse_fences_is_bounded() -> None:
    raw = [{"type": "circle", "center": {"lat": 0, "lng": 0}, "radius_m": 5}] * (MAX_FENCES_PER_ENTITY + 1)
    with pytest.raises(ValidationError):
        parse_fences(raw)


def test_collect_fences_skips_malformed_and_folds_legacy() -> None:
    fences = collect_fences(
        [
            {"type": "circle", "center": {"lat": 0, "lng": 0}, "radius_m": 10},
            {"type": "circle", "center": {"lat": 0}},
            "garbage",
            {"type": "polygon", "ring": SQUARE},
        ],
        {"lat": 3, "lng": 4, "radius": None},
    )
    assert len(fences) == 3
    legacy = fences[0]
    assert isinstance(legacy, CircleFence)
    assert legacy.radius_m == 50
    assert isinstance(fences[2], PolygonFence)


def test_effective_fences_prefer_task_then_project() -> None:
    project = SimpleNamespace(geo_fences=[{"type": "polygon", "ring": SQUARE}], location_geo_fence=None)
    projects = {"p1": project}

    fenced_task = SimpleNamespace(
        project_id="p1",
        geo_fences=[{"type": "circle", "center": {"lat": 0, "lng": 0}, "radius_m": 10}],
        location_geo_fence=None,
    )
    fences, source = resolve_effective_fences(fenced_task, projects.get)
    assert source == FenceSource.TASK
    assert len(fences) == 1

    bare_task = SimpleNamespace(project_id="p1", geo_fences=[], location_geo_fence=None)
    fences, source = resolve_effective_fences(bare_task, projects.get)
    assert source == FenceSource.PROJECT
    assert isinstance(fences[0], PolygonFence)

    orphan = SimpleNamespace(project_id="missing", geo_fences=[], location_geo_fence=None)
    assert resolve_effective_fences(orphan, projects.get) == ([], FenceSource.NONE)


def test_boundary_warnings_only_for_fences_outside_project_polygons() -> None:
    boundary = [PolygonFence(ring=SQUARE)]
    assert boundary_warnings([_circle(0, 0, 10)], boundary) == []
    assert boundary_warnings([_circle(1, 1, 10)], boundary)
    assert boundary_warnings([_circle(1, 1, 10)], [_circle(0, 0, 10)]) == []
