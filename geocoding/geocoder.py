"""Client for a Nominatim-compatible geocoding service."""
import logging
from typing import Optional

import requests

from processor.models import GeocodingResult, Point, ReverseGeocodingResult

logger = logging.getLogger(__name__)


class Geocoder:
    """
    Forward and reverse geocoding.

    Every failure (network, HTTP status, malformed body, no match) is
    logged and reported as None: address enrichment is optional.
    """

    DEFAULT_URL = "https://nominatim.openstreetmap.org"

    def __init__(
        self,
        base_url: str = DEFAULT_URL,
        user_agent: str = "local-events-aggregator",
        timeout: float = 10,
    ):
        self.base_url = base_url.rstrip('/')
        self.headers = {'User-Agent': user_agent}
        self.timeout = timeout

    def forward_geocode(self, address: str) -> Optional[GeocodingResult]:
        """
        Resolve an address to coordinates.

        Args:
            address: Free-form address

        Returns:
            GeocodingResult or None if the address could not be resolved
        """
        if not address or not address.strip():
            return None

        payload = self._get('/search', {'q': address, 'format': 'json', 'limit': 1})
        if not isinstance(payload, list) or not payload:
            logger.info(f"No geocoding match for address '{address}'")
            return None

        try:
            match = payload[0]
            return GeocodingResult(
                latitude=float(match['lat']),
                longitude=float(match['lon']),
                formatted_address=match.get('display_name', address),
            )
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Malformed geocoding result for '{address}': {e}")
            return None

    def reverse_geocode(self, latitude: float, longitude: float) -> Optional[ReverseGeocodingResult]:
        """
        Resolve coordinates to a postal address.

        Args:
            latitude: Latitude in decimal degrees
            longitude: Longitude in decimal degrees

        Returns:
            ReverseGeocodingResult or None if no address is available
        """
        payload = self._get('/reverse', {
            'lat': latitude,
            'lon': longitude,
            'format': 'json',
            'addressdetails': 1,
        })
        if not isinstance(payload, dict) or 'error' in payload:
            logger.info(f"No reverse geocoding match for ({latitude}, {longitude})")
            return None

        details = payload.get('address') or {}
        street = ' '.join(
            part for part in [details.get('house_number'), details.get('road')] if part
        )
        return ReverseGeocodingResult(
            address=street,
            city=details.get('city') or details.get('town') or details.get('village') or '',
            state=details.get('state', ''),
            country=details.get('country', ''),
            postal_code=details.get('postcode', ''),
            formatted_address=payload.get('display_name', ''),
        )

    def _get(self, path: str, params: dict):
        url = f"{self.base_url}{path}"
        try:
            response = requests.get(url, params=params, headers=self.headers, timeout=self.timeout)
            response.raise_for_status()
            return response.json()
        except (requests.RequestException, ValueError) as e:
            logger.warning(f"Geocoding request to {url} failed: {e}")
            return None


def to_center(result: Optional[GeocodingResult]) -> Optional[Point]:
    """
    Turn a geocoding result into a query center after checking its shape.

    Args:
        result: Forward geocoding result

    Returns:
        Point, or None if the result is missing or out of range
    """
    if result is None:
        return None
    try:
        point = Point(longitude=float(result.longitude), latitude=float(result.latitude))
    except (TypeError, ValueError):
        return None
    return point if point.is_valid() else None
