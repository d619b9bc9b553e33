from __future__ import annotations

from dataclasses import dataclass, field

from .errors import InvalidRequestError


@dataclass(frozen=True)
class StreetProfile:
    name: str
    respect_oneway: bool = True
    fixed_speed_kph: float | None = None
    excluded_road_classes: frozenset[str] = field(default_factory=frozenset)

    def allows(self, road_class: str) -> bool:
        return road_class not in self.excluded_road_classes

    def speed_kph(self, edge_speed_kph: float) -> float:
        if self.fixed_speed_kph is not None:
            return float(self.fixed_speed_kph)
        return max(1.0, float(edge_speed_kph))


PROFILES: dict[str, StreetProfile] = {
    "car": StreetProfile(
        name="car",
        excluded_road_classes=frozenset(
            {"footway", "path", "pedestrian", "steps", "cycleway", "bridleway", "corridor"}
        ),
    ),
    "foot": StreetProfile(
        name="foot",
        respect_oneway=False,
        fixed_speed_kph=5.0,
        excluded_road_classes=frozenset({"motorway", "motorway_link", "trunk", "trunk_link"}),
    ),
}


def get_profile(name: str) -> StreetProfile:
    key = (name or "").strip().lower()
    profile = PROFILES.get(key)
    if profile is None:
        raise InvalidRequestError(
            f"The requested profile '{name}' does not exist. Available: {sorted(PROFILES)}",
            details={"profile": name},
        )
    return profile
