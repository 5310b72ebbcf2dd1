"""Source adapter contract and shared HTTP plumbing."""
import logging
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol

import requests

from processor.errors import AdapterError
from processor.event_processor import EventProcessor
from processor.models import NormalizedEvent, Point, RawEvent

logger = logging.getLogger(__name__)


class SourceAdapter(Protocol):
    """
    One external event provider.

    fetch must return normalized records with source and source_id set,
    return an empty list when the provider has no results, raise
    AdapterError on failure, and never write to the store.
    """

    name: str

    def fetch(self, center: Point, radius_km: float) -> List[NormalizedEvent]:
        ...


def fetch_json(
    source: str,
    url: str,
    params: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None,
    timeout: float = 30,
    max_retries: int = 3,
    base_delay: float = 1,
) -> Any:
    """
    GET a JSON document with retry and exponential backoff.

    Args:
        source: Adapter name, used in errors and logs
        url: Endpoint URL
        params: Query string parameters
        headers: Request headers
        timeout: Per-request timeout in seconds
        max_retries: Total number of attempts
        base_delay: Delay before the first retry in seconds

    Returns:
        Decoded JSON payload

    Raises:
        AdapterError: If all attempts fail or the body is not JSON
    """
    for attempt in range(max_retries):
        try:
            logger.info(f"Fetching {source} events (attempt {attempt + 1}/{max_retries})")
            response = requests.get(url, params=params, headers=headers, timeout=timeout)
            response.raise_for_status()
            break

        except requests.RequestException as e:
            if attempt < max_retries - 1:
                # Calculate exponential backoff delay
                delay = base_delay * (2 ** attempt)
                logger.warning(
                    f"{source} request failed (attempt {attempt + 1}/{max_retries}): {e}. "
                    f"Retrying in {delay} seconds..."
                )
                time.sleep(delay)
            else:
                logger.error(
                    f"All {max_retries} {source} attempts failed. Last error: {e}"
                )
                raise AdapterError(source, f"request failed: {e}", cause=e) from e

    try:
        return response.json()
    except ValueError as e:
        raise AdapterError(source, f"response is not JSON: {e}", cause=e) from e


def normalize_items(
    source: str,
    items: Iterable[dict],
    to_raw: Callable[[dict], RawEvent],
    processor: EventProcessor,
) -> List[NormalizedEvent]:
    """
    Map provider items to raw events and normalize them.

    Items that cannot be mapped are skipped with a warning.

    Args:
        source: Adapter name
        items: Provider event objects
        to_raw: Provider-specific mapping to RawEvent
        processor: Normalizer

    Returns:
        List of normalized events
    """
    raw_events = []
    for item in items:
        try:
            raw_events.append(to_raw(item))
        except (KeyError, TypeError, ValueError, AttributeError, IndexError) as e:
            logger.warning(f"Failed to parse {source} event: {e}")
            continue
    return processor.process_events(raw_events)
