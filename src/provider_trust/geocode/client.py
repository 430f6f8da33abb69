"""
Google Geocoding API client.

Maps one free-form address to a ``GeocodeOutcome``. Over-quota and network
failures are retried through the shared retry policy; a denied request is a
fatal configuration problem and is reported as such, never retried.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional

import requests

from ..errors import ConfigurationError, FatalExternalError, TransientExternalError
from ..external.rate_limiter import TokenBucket
from ..external.retry import RetryPolicy

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://maps.googleapis.com/maps/api/geocode/json"


class GeocodeStatus(str, Enum):
    OK = "ok"
    NO_RESULT = "no_result"
    ERROR = "error"
    FATAL = "fatal"


@dataclass
class GeocodeOutcome:
    status: GeocodeStatus
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    message: Optional[str] = None


class GoogleGeocoder:
    """Geocodes addresses one request at a time through an injected limiter."""

    def __init__(self, api_key: str, limiter: TokenBucket, retry_policy: RetryPolicy,
                 api_url: str = DEFAULT_API_URL, timeout: float = 10,
                 session: Optional[requests.Session] = None):
        if not api_key:
            raise ConfigurationError("A geocoding API key is required (GOOGLE_MAPS_API_KEY)")
        self.api_key = api_key
        self.limiter = limiter
        self.retry_policy = retry_policy
        self.api_url = api_url
        self.timeout = timeout
        self.session = session or requests.Session()
        self.calls_made = 0

    @classmethod
    def from_config(cls, config: Dict, session: Optional[requests.Session] = None) -> "GoogleGeocoder":
        geocoding = config.get("geocoding", {})
        rps = geocoding.get("requests_per_second", 40)
        return cls(
            api_key=geocoding.get("api_key"),
            limiter=TokenBucket(geocoding.get("bucket_capacity", rps), rps),
            retry_policy=RetryPolicy.from_config(geocoding.get("retry", {})),
            api_url=geocoding.get("api_url", DEFAULT_API_URL),
            timeout=geocoding.get("timeout_seconds", 10),
            session=session,
        )

    def _request(self, address: str) -> GeocodeOutcome:
        self.limiter.acquire()
        self.calls_made += 1
        try:
            response = self.session.get(
                self.api_url,
                params={"address": address, "key": self.api_key},
                timeout=self.timeout,
            )
        except (requests.ConnectionError, requests.Timeout) as e:
            raise TransientExternalError(f"Geocoder unreachable: {e}") from e

        if response.status_code in (401, 403):
            raise FatalExternalError(f"Geocoder refused request ({response.status_code})")
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientExternalError(f"Geocoder returned HTTP {response.status_code}")

        try:
            data = response.json()
        except ValueError as e:
            raise TransientExternalError("Geocoder returned invalid JSON") from e

        status = data.get("status")
        if status == "OK":
            results = data.get("results") or []
            location = results[0].get("geometry", {}).get("location") if results else None
            if not location:
                return GeocodeOutcome(GeocodeStatus.NO_RESULT, message="OK without location")
            return GeocodeOutcome(GeocodeStatus.OK, location["lat"], location["lng"])
        if status in ("ZERO_RESULTS", "INVALID_REQUEST"):
            return GeocodeOutcome(GeocodeStatus.NO_RESULT, message=status)
        if status == "REQUEST_DENIED":
            raise FatalExternalError(f"REQUEST_DENIED: {data.get('error_message', 'no detail')}")
        if status in ("OVER_QUERY_LIMIT", "UNKNOWN_ERROR"):
            raise TransientExternalError(status)
        return GeocodeOutcome(GeocodeStatus.ERROR, message=f"Unexpected status {status}")

    def geocode(self, address: str) -> GeocodeOutcome:
        """
        Geocode one address.

        Args:
            address: Free-form address string

        Returns:
            GeocodeOutcome; retries exhausted become ``error``, denial ``fatal``
        """
        try:
            return self.retry_policy.call(lambda: self._request(address), description="geocode")
        except TransientExternalError as e:
            return GeocodeOutcome(GeocodeStatus.ERROR, message=str(e))
        except FatalExternalError as e:
            return GeocodeOutcome(GeocodeStatus.FATAL, message=str(e))
