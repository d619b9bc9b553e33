from __future__ import annotations

import asyncio
import math
import time
import uuid
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware

from .engine import GraphRoutingEngine, RoutingEngine
from .errors import (
    AssetUnavailableError,
    ConnectionNotFoundError,
    EdgelinkError,
    InternalInvariantError,
    InvalidRequestError,
    PointsNotFoundError,
    SearchExhaustedError,
    normalize_reason_code,
)
from .link_store import LinkTable
from .logging_utils import log_event, log_warning
from .models import (
    DecoratedPtLeg,
    DecorateRequest,
    DecorateResponse,
    GeoJSONLineString,
    LatLng,
    LinkTableStatsResponse,
    PathDetailOut,
    RouteLegOut,
    RouteRequest,
    RouteResponse,
)
from .route_cache import get_cached_route, route_cache_key, route_cache_stats, set_cached_route
from .route_stitcher import RouteStitcher, StitchedRoute, StitchPoint, StitchRequest
from .settings import settings
from .street_graph import load_street_graph
from .time_of_day import from_epoch_ms, to_epoch_ms
from .transit_links import TransitLegDecorator


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.engine = None
    app.state.link_table = None
    if settings.load_assets_on_startup:
        graph_path = settings.resolved_street_graph_path()
        try:
            graph = load_street_graph(graph_path)
            app.state.engine = GraphRoutingEngine(graph, snap_max_distance_m=settings.snap_max_distance_m)
        except AssetUnavailableError as exc:
            log_warning("street_graph_unavailable", path=str(graph_path), reason=exc.message)
        table_path = settings.resolved_link_table_path()
        try:
            app.state.link_table = LinkTable.open(table_path)
        except AssetUnavailableError as exc:
            log_warning("link_table_unavailable", path=str(table_path), reason=exc.message)
    yield
    if app.state.link_table is not None:
        app.state.link_table.close()


app = FastAPI(title="Edgelink Router", version="0.3.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


def routing_engine(request: Request) -> RoutingEngine:
    engine: RoutingEngine | None = getattr(request.app.state, "engine", None)  # type: ignore[attr-defined]
    if engine is None:
        raise HTTPException(status_code=503, detail="Street graph not loaded")
    return engine


def link_table(request: Request) -> LinkTable:
    table: LinkTable | None = getattr(request.app.state, "link_table", None)  # type: ignore[attr-defined]
    if table is None:
        raise HTTPException(status_code=503, detail="Link table not loaded")
    return table


EngineDep = Annotated[RoutingEngine, Depends(routing_engine)]
LinkTableDep = Annotated[LinkTable, Depends(link_table)]


def _http_error(exc: EdgelinkError) -> HTTPException:
    detail: dict[str, object] = {
        "reason_code": normalize_reason_code(exc.reason_code),
        "message": exc.message,
    }
    if exc.details:
        detail["details"] = exc.details
    if isinstance(exc, PointsNotFoundError):
        detail["points"] = [err.details for err in exc.errors]
        return HTTPException(status_code=400, detail=detail)
    if isinstance(exc, InvalidRequestError):
        return HTTPException(status_code=400, detail=detail)
    if isinstance(exc, ConnectionNotFoundError):
        return HTTPException(status_code=404, detail=detail)
    if isinstance(exc, SearchExhaustedError):
        return HTTPException(status_code=422, detail=detail)
    if isinstance(exc, AssetUnavailableError):
        return HTTPException(status_code=503, detail=detail)
    if isinstance(exc, InternalInvariantError):
        return HTTPException(status_code=500, detail=detail)
    return HTTPException(status_code=500, detail=detail)


def _to_stitch_request(req: RouteRequest) -> StitchRequest:
    waypoints = req.waypoints
    headings: tuple[float, ...] = ()
    if any(w.heading is not None for w in waypoints):
        headings = tuple(math.nan if w.heading is None else float(w.heading) for w in waypoints)
    curbsides: tuple[str, ...] = ()
    if any(w.curbside is not None for w in waypoints):
        curbsides = tuple(w.curbside or "any" for w in waypoints)
    return StitchRequest(
        points=tuple(StitchPoint(w.lat, w.lon, w.hint) for w in waypoints),
        headings=headings,
        curbsides=curbsides,
        pass_through=req.pass_through,
        time_dependent=req.time_dependent,
        departure_ms=to_epoch_ms(req.departure_time_utc) if req.departure_time_utc is not None else None,
        details=tuple(req.details),
        profile=req.profile,
        max_visited_nodes=req.max_visited_nodes,
        force_curbside=req.force_curbside,
    )


def _route_response(route: StitchedRoute) -> RouteResponse:
    legs = [
        RouteLegOut(
            index=index,
            distance_m=round(leg.distance_m, 3),
            duration_s=round(leg.time_ms / 1000.0, 3),
            visited_nodes=leg.visited_nodes,
            edge_count=len(leg.edges),
            departure_time_utc=from_epoch_ms(leg.departure_ms) if leg.departure_ms is not None else None,
            arrival_time_utc=from_epoch_ms(leg.arrival_ms) if leg.arrival_ms is not None else None,
            debug=route.debug_info[index] if index < len(route.debug_info) else "",
        )
        for index, leg in enumerate(route.legs)
    ]
    return RouteResponse(
        distance_m=round(route.distance_m, 3),
        duration_s=round(route.time_ms / 1000.0, 3),
        weight=round(route.weight, 3),
        geometry=GeoJSONLineString(type="LineString", coordinates=[(lon, lat) for lat, lon in route.points]),
        snapped_waypoints=[LatLng(lat=lat, lon=lon) for lat, lon in route.snapped_points],
        legs=legs,
        details={
            name: [PathDetailOut(**detail.as_dict()) for detail in details]
            for name, details in route.details.items()
        },
        hints={key: float(value) for key, value in route.hints.items()},
        debug_info=list(route.debug_info),
    )


@app.get("/")
async def root() -> dict[str, str]:
    return {"message": "Backend is running. Visit /docs for the API UI.", "docs": "/docs"}


@app.get("/health")
async def health(request: Request) -> dict[str, str]:
    return {
        "status": "ok",
        "street_graph": "loaded" if getattr(request.app.state, "engine", None) is not None else "missing",
        "link_table": "loaded" if getattr(request.app.state, "link_table", None) is not None else "missing",
    }


@app.post("/route", response_model=RouteResponse)
async def compute_route(req: RouteRequest, engine: EngineDep) -> RouteResponse:
    request_id = str(uuid.uuid4())
    t0 = time.perf_counter()

    graph = getattr(engine, "graph", None)
    cache_key = route_cache_key(
        req.model_dump(mode="json"),
        graph_version=str(getattr(graph, "version", "unknown")),
    )
    cached = get_cached_route(cache_key)
    if cached is not None:
        log_event(
            "route_request",
            request_id=request_id,
            waypoints=len(req.waypoints),
            cache_hit=True,
            duration_ms=round((time.perf_counter() - t0) * 1000, 2),
        )
        return RouteResponse.model_validate({**cached, "cached": True})

    stitcher = RouteStitcher(engine)
    try:
        route = await asyncio.to_thread(stitcher.route, _to_stitch_request(req))
    except EdgelinkError as e:
        log_event(
            "route_request_failed",
            request_id=request_id,
            waypoints=len(req.waypoints),
            reason_code=e.reason_code,
            error=e.message,
            duration_ms=round((time.perf_counter() - t0) * 1000, 2),
        )
        raise _http_error(e) from e

    response = _route_response(route)
    set_cached_route(cache_key, response.model_dump(mode="json"))

    log_event(
        "route_request",
        request_id=request_id,
        profile=req.profile,
        waypoints=len(req.waypoints),
        legs=len(route.legs),
        details=list(req.details),
        distance_m=response.distance_m,
        duration_s=response.duration_s,
        visited_nodes_sum=route.visited_nodes_sum,
        cache_hit=False,
        duration_ms=round((time.perf_counter() - t0) * 1000, 2),
    )
    return response


@app.post("/route-pt/decorate", response_model=DecorateResponse)
async def decorate_pt_route(req: DecorateRequest, table: LinkTableDep) -> DecorateResponse:
    request_id = str(uuid.uuid4())
    t0 = time.perf_counter()

    legs = TransitLegDecorator(table).decorate_legs(req.legs)
    linked = sum(1 for leg in legs if isinstance(leg, DecoratedPtLeg) and leg.stable_edge_ids)

    log_event(
        "pt_decorate_request",
        request_id=request_id,
        legs=len(legs),
        linked_pt_legs=linked,
        duration_ms=round((time.perf_counter() - t0) * 1000, 2),
    )
    return DecorateResponse(legs=legs, linked_pt_legs=linked)


@app.get("/links/stats", response_model=LinkTableStatsResponse)
async def link_stats(table: LinkTableDep) -> LinkTableStatsResponse:
    return LinkTableStatsResponse(**table.stats().as_dict(), source=table.source)


@app.get("/cache/stats")
async def cache_stats() -> dict[str, int]:
    return route_cache_stats()
