from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, field_validator

Curbside = Literal["left", "right", "any"]
ProfileName = Literal["car", "foot"]


class LatLng(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lon: float = Field(..., ge=-180, le=180)


class Waypoint(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lon: float = Field(..., ge=-180, le=180)
    # None means unconstrained.
    heading: float | None = Field(default=None, ge=0.0, le=360.0)
    curbside: Curbside | None = None
    hint: str | None = Field(default=None, max_length=200)


class RouteRequest(BaseModel):
    waypoints: list[Waypoint] = Field(default_factory=list, max_length=48)
    profile: ProfileName = "car"
    details: list[str] = Field(default_factory=list, max_length=16)
    pass_through: bool = False
    time_dependent: bool = False
    departure_time_utc: datetime | None = None
    max_visited_nodes: int | None = Field(default=None, ge=1)
    force_curbside: bool | None = None

    @field_validator("details")
    @classmethod
    def strip_detail_names(cls, v: list[str]) -> list[str]:
        return [name.strip() for name in v if name and name.strip()]


class GeoJSONLineString(BaseModel):
    type: Literal["LineString"]
    coordinates: list[tuple[float, float]]  # [lon, lat]


class PathDetailOut(BaseModel):
    first: int
    last: int
    value: Any


class RouteLegOut(BaseModel):
    index: int
    distance_m: float
    duration_s: float
    visited_nodes: int
    edge_count: int
    departure_time_utc: datetime | None = None
    arrival_time_utc: datetime | None = None
    debug: str = ""


class RouteResponse(BaseModel):
    distance_m: float
    duration_s: float
    weight: float
    geometry: GeoJSONLineString
    snapped_waypoints: list[LatLng]
    legs: list[RouteLegOut]
    details: dict[str, list[PathDetailOut]] = Field(default_factory=dict)
    hints: dict[str, float] = Field(default_factory=dict)
    debug_info: list[str] = Field(default_factory=list)
    cached: bool = False


class PtStop(BaseModel):
    stop_id: str = Field(..., min_length=1)
    stop_name: str = ""
    lat: float | None = Field(default=None, ge=-90, le=90)
    lon: float | None = Field(default=None, ge=-180, le=180)
    arrival_time_utc: datetime | None = None
    departure_time_utc: datetime | None = None


class PtLegIn(BaseModel):
    type: Literal["pt"] = "pt"
    # Internal feed key (gtfs_0, gtfs_1, ...), as assigned when the link table was built.
    feed_id: str
    route_id: str
    trip_id: str = ""
    trip_headsign: str = ""
    is_in_same_vehicle_as_previous: bool = False
    stops: list[PtStop] = Field(default_factory=list)
    distance_m: float = Field(default=0.0, ge=0.0)
    travel_time_ms: int = Field(default=0, ge=0)


class WalkLegIn(BaseModel):
    type: Literal["walk"] = "walk"
    distance_m: float = Field(default=0.0, ge=0.0)
    travel_time_ms: int = Field(default=0, ge=0)
    geometry: GeoJSONLineString | None = None


TransitLegIn = Annotated[Union[PtLegIn, WalkLegIn], Field(discriminator="type")]


class DecorateRequest(BaseModel):
    legs: list[TransitLegIn] = Field(default_factory=list, max_length=64)


class DecoratedPtLeg(PtLegIn):
    stable_edge_ids: list[str] = Field(default_factory=list)
    agency_name: str = ""
    route_short_name: str = ""
    route_long_name: str = ""
    route_type: str = ""


DecoratedLeg = Annotated[Union[DecoratedPtLeg, WalkLegIn], Field(discriminator="type")]


class DecorateResponse(BaseModel):
    legs: list[DecoratedLeg]
    linked_pt_legs: int = 0


class LinkTableStatsResponse(BaseModel):
    link_mappings: int
    route_info: int
    feed_ids: int
    version: str
    created_at: str
    source: str
