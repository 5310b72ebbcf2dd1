"""Runtime configuration read from environment variables."""
import os
from dataclasses import dataclass
from typing import Mapping, Optional


@dataclass(frozen=True)
class Settings:
    """Configuration for the event aggregation service."""
    table_name: str = 'local-events'
    store_backend: str = 'dynamodb'
    region_name: Optional[str] = None
    log_level: str = 'INFO'
    timeout_seconds: float = 30
    refresh_timeout_seconds: float = 45
    default_radius_km: float = 50
    default_page_size: int = 20
    default_latitude: Optional[float] = None
    default_longitude: Optional[float] = None
    events_topic_arn: Optional[str] = None
    eventbrite_token: Optional[str] = None
    ticketmaster_api_key: Optional[str] = None
    meetup_token: Optional[str] = None
    geocoder_url: str = 'https://nominatim.openstreetmap.org'
    geocoder_user_agent: str = 'local-events-aggregator'

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'Settings':
        """
        Build settings from environment variables.

        Args:
            environ: Mapping to read, defaults to os.environ

        Returns:
            Settings instance
        """
        env = os.environ if environ is None else environ

        def optional_float(name: str) -> Optional[float]:
            value = env.get(name)
            return float(value) if value not in (None, '') else None

        return cls(
            table_name=env.get('TABLE_NAME', 'local-events'),
            store_backend=env.get('STORE_BACKEND', 'dynamodb').lower(),
            region_name=env.get('AWS_REGION') or None,
            log_level=env.get('LOG_LEVEL', 'INFO'),
            timeout_seconds=float(env.get('TIMEOUT_SECONDS', '30')),
            refresh_timeout_seconds=float(env.get('REFRESH_TIMEOUT_SECONDS', '45')),
            default_radius_km=float(env.get('DEFAULT_RADIUS_KM', '50')),
            default_page_size=int(env.get('DEFAULT_PAGE_SIZE', '20')),
            default_latitude=optional_float('DEFAULT_LATITUDE'),
            default_longitude=optional_float('DEFAULT_LONGITUDE'),
            events_topic_arn=env.get('EVENTS_TOPIC_ARN') or None,
            eventbrite_token=env.get('EVENTBRITE_TOKEN') or None,
            ticketmaster_api_key=env.get('TICKETMASTER_API_KEY') or None,
            meetup_token=env.get('MEETUP_TOKEN') or None,
            geocoder_url=env.get('GEOCODER_URL', 'https://nominatim.openstreetmap.org'),
            geocoder_user_agent=env.get('GEOCODER_USER_AGENT', 'local-events-aggregator'),
        )
