"""Interfaces and helpers for turning a location string into provider coordinates."""

from __future__ import annotations

import re
from typing import Mapping, Optional, Protocol

from app.errors import LocationError

COORDINATES_RE = re.compile(r"^-?\d+(\.\d+)?,-?\d+(\.\d+)?$")


class GeocodingResolver(Protocol):
    """Anything that can map a place name to a "lat,lon" string."""

    def resolve(self, location_name: str) -> Optional[str]:
        """Return "lat,lon" for the name, or None if it is unknown."""
        ...


class StaticGeocoder(GeocodingResolver):
    """Resolve names from a fixed, case-insensitive name -> "lat,lon" table."""

    def __init__(self, known_locations: Mapping[str, str] | None = None) -> None:
        self._table = {name.strip().lower(): coords for name, coords in (known_locations or {}).items()}

    def resolve(self, location_name: str) -> Optional[str]:
        return self._table.get(location_name.strip().lower())


def is_coordinates(location: str) -> bool:
    return bool(COORDINATES_RE.match(location))


def resolve_coordinates(location: str, geocoder: GeocodingResolver) -> str:
    """Return `location` unchanged if it is already "lat,lon", else ask the geocoder."""
    if is_coordinates(location):
        return location
    coordinates = geocoder.resolve(location)
    if not coordinates:
        raise LocationError(location)
    return coordinates
