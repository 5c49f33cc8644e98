from math import ceil


def split_cost(distance_km: float, occupants: int, per_km: float) -> float:
    """Per-person share of a trip:
    total = per_km * distance, split evenly over everyone in the car (driver included).
    """
    occupants = max(1, occupants)
    return round(per_km * distance_km / occupants, 2)


def travel_minutes(distance_km: float, average_speed_kmh: float) -> int:
    """Whole minutes to cover distance_km at a constant average speed (rounded up)."""
    if distance_km <= 0:
        return 0
    return int(ceil(distance_km / average_speed_kmh * 60))
