from __future__ import annotations

import zipfile
from pathlib import Path

from street_fixtures import NOWHERE, ON_AB, ON_CF, ON_EF, ON_XY

# S1 -> S2 -> S3 run over the grid, S9 sits on the island edge and S8 is off
# the map entirely.
GTFS_TABLES: dict[str, str] = {
    "feed_info.txt": "feed_publisher_name,feed_lang,feed_id\nMetro,en,metro\n",
    "agency.txt": "agency_id,agency_name,agency_url,agency_timezone\nMA,Metro Area Transit,https://example.org,America/Chicago\n",
    "routes.txt": (
        "route_id,agency_id,route_short_name,route_long_name,route_type\n"
        "R1,MA,101,\"Main, North & East\",3\n"
        "R2,MA,RL,Red Line,2\n"
        "R3,MA,303,Island Shuttle,3\n"
    ),
    "trips.txt": "route_id,service_id,trip_id\nR1,WK,T1\nR1,WK,T2\nR2,WK,T3\nR3,WK,T4\n",
    "stop_times.txt": (
        "trip_id,arrival_time,departure_time,stop_id,stop_sequence\n"
        "T1,08:00:00,08:00:00,S3,3\n"
        "T1,07:50:00,07:50:00,S1,1\n"
        "T1,07:55:00,07:55:00,S2,2\n"
        "T2,09:00:00,09:00:00,S1,1\n"
        "T2,09:01:00,09:01:00,S1,2\n"
        "T2,09:05:00,09:05:00,S2,3\n"
        "T3,10:00:00,10:00:00,S1,1\n"
        "T3,10:10:00,10:10:00,S3,2\n"
        "T4,11:00:00,11:00:00,S3,1\n"
        "T4,11:10:00,11:10:00,S9,2\n"
        "T4,11:20:00,11:20:00,S8,3\n"
    ),
    "stops.txt": (
        "stop_id,stop_name,stop_lat,stop_lon\n"
        f"S1,Main & Centre,{ON_AB.lat},{ON_AB.lon}\n"
        f"S2,North & Centre,{ON_EF.lat},{ON_EF.lon}\n"
        f"S3,East Road,{ON_CF.lat},{ON_CF.lon}\n"
        f"S9,Island,{ON_XY.lat},{ON_XY.lon}\n"
        f"S8,Far Away,{NOWHERE.lat},{NOWHERE.lon}\n"
        "S0,Broken,,\n"
    ),
}


def write_gtfs_dir(root: Path, tables: dict[str, str] | None = None) -> Path:
    root.mkdir(parents=True, exist_ok=True)
    for name, text in (tables or GTFS_TABLES).items():
        (root / name).write_text(text, encoding="utf-8")
    return root


def write_gtfs_zip(path: Path, tables: dict[str, str] | None = None, *, prefix: str = "") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(path, "w") as archive:
        for name, text in (tables or GTFS_TABLES).items():
            archive.writestr(prefix + name, text)
    return path
