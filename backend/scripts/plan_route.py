from __future__ import annotations

import argparse
import asyncio
import json
from pathlib import Path
from typing import Any, Sequence

import httpx

from planner.models import Coordinate, Place
from planner.route_cache import RouteCacheStore
from planner.route_store import RouteStateStore
from planner.routing_ors import LeadingEdgeThrottle, ORSClient
from planner.settings import settings


def parse_lon_lat(text: str) -> Coordinate:
    parts = [p.strip() for p in text.split(",")]
    if len(parts) != 2:
        raise argparse.ArgumentTypeError(f"expected 'lon,lat', got {text!r}")
    try:
        lon, lat = float(parts[0]), float(parts[1])
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"expected 'lon,lat', got {text!r}") from e
    if not (-180.0 <= lon <= 180.0 and -90.0 <= lat <= 90.0):
        raise argparse.ArgumentTypeError(f"coordinate out of range: {text!r}")
    return (lon, lat)


def parse_shaping(text: str) -> tuple[int, Coordinate]:
    anchor, sep, coord = text.partition(":")
    if not sep:
        raise argparse.ArgumentTypeError(f"expected 'anchor:lon,lat', got {text!r}")
    try:
        anchor_index = int(anchor)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"anchor must be an integer, got {anchor!r}") from e
    return anchor_index, parse_lon_lat(coord)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Plan a route through start, optional vias and shaping points, end."
    )
    parser.add_argument("--start", type=parse_lon_lat, required=True)
    parser.add_argument("--end", type=parse_lon_lat, required=True)
    parser.add_argument("--via", type=parse_lon_lat, action="append", default=[])
    parser.add_argument(
        "--shape",
        type=parse_shaping,
        action="append",
        default=[],
        help="Shaping point as 'anchor:lon,lat' (anchor 1 = first leg).",
    )
    parser.add_argument("--base-url", default=settings.ors_base_url)
    parser.add_argument("--api-key", default=settings.ors_api_key)
    parser.add_argument("--profile", default=settings.ors_profile)
    parser.add_argument("--output", default=None, help="Write the route GeoJSON here.")
    return parser


async def plan_route(
    args: argparse.Namespace,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> dict[str, Any]:
    client = ORSClient(
        base_url=args.base_url,
        api_key=args.api_key,
        profile=args.profile,
        cache=RouteCacheStore(ttl_s=60, max_entries=8),
        throttle=LeadingEdgeThrottle(0.0),
        transport=transport,
    )
    try:
        store = RouteStateStore(client)
        store.add_place_as_waypoint(Place(label="start", coord=args.start))
        store.add_place_as_waypoint(Place(label="end", coord=args.end))
        for index, coord in enumerate(args.via, start=1):
            store.add_place_as_waypoint(Place(label=f"via {index}", coord=coord))
        for anchor_index, coord in args.shape:
            store.insert_shaping_point(anchor_index, coord)
        path = await store.recalc()
    finally:
        await client.aclose()

    summary = {
        "state": store.state.value,
        "strategy": store.path_strategy.value,
        "waypoint_count": len(store.waypoints),
        "shaping_count": len(store.shaping_points),
        "point_count": len(path.coordinates),
        "distance_m": round(path.distance_m, 1),
        "duration_s": round(path.duration_s, 1),
    }
    if args.output:
        out = Path(args.output)
        out.parent.mkdir(parents=True, exist_ok=True)
        out.write_text(json.dumps(path.to_feature_collection(), indent=2), encoding="utf-8")
        summary["output_file"] = str(out)
    return summary


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(list(argv) if argv is not None else None)
    summary = asyncio.run(plan_route(args))
    print(json.dumps(summary, indent=2))
    return 0 if summary["point_count"] >= 2 else 1


if __name__ == "__main__":
    raise SystemExit(main())
