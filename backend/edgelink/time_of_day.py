from __future__ import annotations

from datetime import UTC, datetime

# (first_hour, last_hour, multiplier), inclusive, UTC.
WEEKDAY_BANDS: tuple[tuple[int, int, float], ...] = (
    (0, 4, 0.9),
    (7, 9, 1.25),
    (10, 15, 1.05),
    (16, 18, 1.2),
)
WEEKEND_BANDS: tuple[tuple[int, int, float], ...] = (
    (0, 5, 0.9),
    (11, 17, 1.1),
)


def time_of_day_multiplier(departure_time_utc: datetime | None) -> float:
    """Deterministic congestion multiplier applied to edge travel times.

    Weekdays get morning and evening peaks, weekends a single midday band.
    Outside every band the multiplier is 1.0.
    """
    if departure_time_utc is None:
        return 1.0
    if departure_time_utc.tzinfo is not None:
        departure_time_utc = departure_time_utc.astimezone(UTC)
    bands = WEEKEND_BANDS if departure_time_utc.weekday() >= 5 else WEEKDAY_BANDS
    hour = departure_time_utc.hour
    for first, last, multiplier in bands:
        if first <= hour <= last:
            return multiplier
    return 1.0


def multiplier_at_ms(epoch_ms: int | None) -> float:
    if epoch_ms is None:
        return 1.0
    return time_of_day_multiplier(from_epoch_ms(epoch_ms))


def to_epoch_ms(moment: datetime) -> int:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return int(round(moment.timestamp() * 1000.0))


def from_epoch_ms(epoch_ms: int) -> datetime:
    return datetime.fromtimestamp(epoch_ms / 1000.0, tz=UTC)
