from __future__ import annotations

import logging
import math
import os
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter, field_validator
from pydantic import ValidationError as PydanticValidationError

from fieldtask.domain.errors import ValidationError

EARTH_RADIUS_M = 6_371_000.0
DEFAULT_POINT_RADIUS_M = 50.0
# absorbs coordinate rounding at the circle boundary
BOUNDARY_TOLERANCE_M = 0.1
MAX_FENCES_PER_ENTITY = int(os.getenv("MAX_FENCES_PER_ENTITY", "200"))
MAX_RING_VERTICES = int(os.getenv("MAX_RING_VERTICES", "5000"))

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LatLng:
    lat: float
    lng: float


class FenceSource(StrEnum):
    TASK = "task"
    PROJECT = "project"
    NONE = "none"


class FenceCenter(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180, validation_alias=AliasChoices("lng", "lon"))


class CircleFence(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["circle"] = "circle"
    center: FenceCenter
    radius_m: float = Field(gt=0, validation_alias=AliasChoices("radius_m", "radius"))


class PolygonFence(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["polygon"] = "polygon"
    # [lng, lat] pairs, implicitly closed
    ring: list[tuple[float, float]] = Field(
        min_length=3,
        validation_alias=AliasChoices("ring", "polygon"),
    )

    @field_validator("ring")
    @classmethod
    def _bounded_ring(cls, value: list[tuple[float, float]]) -> list[tuple[float, float]]:
        if len(value) > MAX_RING_VERTICES:
            raise ValueError(f"polygon ring exceeds {MAX_RING_VERTICES} vertices")
        return value


GeoFence = Annotated[CircleFence | PolygonFence, Field(discriminator="type")]

_FENCE_ADAPTER: TypeAdapter[CircleFence | PolygonFence] = TypeAdapter(GeoFence)


class LegacyCircleFence(BaseModel):
    """Single circle stored on older task records as ``{lat, lng, radius}``."""

    lat: float
    lng: float
    radius: float | None = DEFAULT_POINT_RADIUS_M

    def to_fence(self) -> CircleFence:
        radius = self.radius if self.radius and self.radius > 0 else DEFAULT_POINT_RADIUS_M
        return CircleFence(center=FenceCenter(lat=self.lat, lng=self.lng), radius_m=radius)


def haversine_meters(a: LatLng, b: LatLng) -> float:
    d_lat = math.radians(b.lat - a.lat)
    d_lng = math.radians(b.lng - a.lng)
    lat1 = math.radians(a.lat)
    lat2 = math.radians(b.lat)
    h = math.sin(d_lat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(d_lng / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.asin(min(1.0, math.sqrt(h)))


def point_in_circle(point: LatLng, fence: CircleFence) -> bool:
    center = LatLng(lat=fence.center.lat, lng=fence.center.lng)
    return haversine_meters(center, point) <= fence.radius_m + BOUNDARY_TOLERANCE_M


def point_in_polygon(point: LatLng, ring: Iterable[Any]) -> bool:
    """Ray casting over ``[lng, lat]`` vertices in their given order; malformed rings are outside."""
    vertices: list[tuple[float, float]] = []
    for item in ring:
        try:
            lng, lat = item[0], item[1]
            vertices.append((float(lng), float(lat)))
        except (TypeError, ValueError, IndexError, KeyError):
            return False
    if len(vertices) < 3:
        return False

    inside = False
    j = len(vertices) - 1
    for i, (xi, yi) in enumerate(vertices):
        xj, yj = vertices[j]
        intersects = ((yi > point.lat) != (yj > point.lat)) and (
            point.lng < (xj - xi) * (point.lat - yi) / ((yj - yi) if (yj - yi) != 0 else 1e-12) + xi
        )
        if intersects:
            inside = not inside
        j = i
    return inside


def is_inside_any_fence(point: LatLng, fences: Iterable[CircleFence | PolygonFence]) -> bool:
    for fence in fences:
        if isinstance(fence, CircleFence) and point_in_circle(point, fence):
            return True
        if isinstance(fence, PolygonFence) and point_in_polygon(point, fence.ring):
            return True
    return False


def parse_fence(raw: Any) -> CircleFence | PolygonFence:
    if isinstance(raw, CircleFence | PolygonFence):
        return raw
    try:
        return _FENCE_ADAPTER.validate_python(raw)
    except PydanticValidationError as exc:
        raise ValidationError(f"invalid geofence: {exc.errors()[0].get('msg', 'malformed')}") from exc


def parse_fences(raw: Iterable[Any]) -> list[CircleFence | PolygonFence]:
    """Strict variant used on import: every entry must be valid and the list is bounded."""
    fences = [parse_fence(item) for item in raw]
    if len(fences) > MAX_FENCES_PER_ENTITY:
        raise ValidationError(f"at most {MAX_FENCES_PER_ENTITY} geofences per entity")
    return fences


def dump_fences(fences: Iterable[CircleFence | PolygonFence]) -> list[dict[str, Any]]:
    return [item.model_dump(mode="json") for item in fences]


def collect_fences(
    geo_fences: Iterable[Any] | None,
    legacy: Mapping[str, Any] | None = None,
) -> list[CircleFence | PolygonFence]:
    """Normalize the legacy single circle plus the fence list, skipping malformed entries."""
    fences: list[CircleFence | PolygonFence] = []
    if legacy and legacy.get("lat") is not None and legacy.get("lng") is not None:
        try:
            fences.append(LegacyCircleFence.model_validate(legacy).to_fence())
        except PydanticValidationError:
            logger.warning("skipping malformed legacy geofence")
    for item in geo_fences or []:
        try:
            fences.append(_FENCE_ADAPTER.validate_python(item))
        except PydanticValidationError:
            logger.warning("skipping malformed geofence")
    return fences


def fences_of(entity: Any) -> list[CircleFence | PolygonFence]:
    return collect_fences(
        getattr(entity, "geo_fences", None),
        getattr(entity, "location_geo_fence", None),
    )


def resolve_effective_fences(
    task: Any,
    project_lookup: Callable[[str], Any | None],
) -> tuple[list[CircleFence | PolygonFence], FenceSource]:
    """Task fences when non-empty, else the project's, else none."""
    task_fences = fences_of(task)
    if task_fences:
        return task_fences, FenceSource.TASK
    project_id = getattr(task, "project_id", None)
    if project_id:
        project = project_lookup(project_id)
        if project is not None:
            project_fences = fences_of(project)
            if project_fences:
                return project_fences, FenceSource.PROJECT
    return [], FenceSource.NONE


def fence_overlaps_any_polygon(
    fence: CircleFence | PolygonFence,
    polygons: list[PolygonFence],
) -> bool:
    """Overlap heuristic: a circle's center or any polygon vertex lies inside a boundary polygon."""
    if not polygons:
        return True
    if isinstance(fence, CircleFence):
        center = LatLng(lat=fence.center.lat, lng=fence.center.lng)
        return any(point_in_polygon(center, poly.ring) for poly in polygons)
    return any(
        point_in_polygon(LatLng(lat=lat, lng=lng), poly.ring)
        for lng, lat in fence.ring
        for poly in polygons
    )


def boundary_warnings(
    fences: list[CircleFence | PolygonFence],
    boundary: list[CircleFence | PolygonFence],
) -> list[str]:
    polygons = [item for item in boundary if isinstance(item, PolygonFence)]
    if not polygons or not fences:
        return []
    if all(fence_overlaps_any_polygon(item, polygons) for item in fences):
        return []
    return ["One or more task geofences do not overlap the project boundary."]
