"""
NPPES registry client.

Fetches one provider record by NPI from the CMS NPI Registry API and parses
it into a ``RegistryRecord``. Calls are gated by an injected rate limiter
and retried through an injected ``RetryPolicy``.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import requests

from ..errors import FatalExternalError, TransientExternalError
from ..external.rate_limiter import TokenBucket
from ..external.retry import RetryPolicy

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://npiregistry.cms.hhs.gov/api/"


@dataclass
class RegistryAddress:
    purpose: str
    address_line1: str = ""
    address_line2: str = ""
    city: str = ""
    state: str = ""
    zip_code: str = ""
    phone: str = ""
    fax: str = ""

    def as_location(self) -> Dict[str, str]:
        """Fields in practice_locations form, empty values dropped."""
        values = {
            "address_purpose": self.purpose,
            "address_line1": self.address_line1,
            "address_line2": self.address_line2,
            "city": self.city,
            "state": self.state,
            "zip_code": self.zip_code[:5] if self.zip_code else "",
            "phone": self.phone,
            "fax": self.fax,
        }
        return {k: v for k, v in values.items() if v}


@dataclass
class RegistryRecord:
    npi: str
    entity_type: str
    status: str = "A"
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    middle_name: Optional[str] = None
    organization_name: Optional[str] = None
    credential: Optional[str] = None
    primary_taxonomy_code: Optional[str] = None
    primary_taxonomy_desc: Optional[str] = None
    deactivation_date: Optional[str] = None
    addresses: List[RegistryAddress] = field(default_factory=list)

    @property
    def is_deactivated(self) -> bool:
        return self.status == "D" or bool(self.deactivation_date)

    @property
    def practice_address(self) -> Optional[RegistryAddress]:
        """The LOCATION address; mailing addresses are never compared."""
        return next((a for a in self.addresses if a.purpose == "LOCATION"), None)


def parse_registry_result(result: Dict) -> RegistryRecord:
    """
    Parse one NPI Registry API result.

    Args:
        result: Raw element of the API's ``results`` list

    Returns:
        Parsed RegistryRecord
    """
    basic = result.get("basic", {})
    enumeration_type = result.get("enumeration_type", "")
    entity_type = "organization" if enumeration_type == "NPI-2" else "individual"

    # Get primary taxonomy or fallback to first available
    taxonomies = result.get("taxonomies", [])
    taxonomy = next((t for t in taxonomies if t.get("primary")), None)
    if not taxonomy and taxonomies:
        taxonomy = taxonomies[0]

    addresses = [
        RegistryAddress(
            purpose=(a.get("address_purpose") or "").upper(),
            address_line1=a.get("address_1", ""),
            address_line2=a.get("address_2", ""),
            city=a.get("city", ""),
            state=a.get("state", ""),
            zip_code=a.get("postal_code", ""),
            phone=a.get("telephone_number", ""),
            fax=a.get("fax_number", ""),
        )
        for a in result.get("addresses", [])
    ]

    return RegistryRecord(
        npi=str(result.get("number")),
        entity_type=entity_type,
        status=basic.get("status", "A"),
        first_name=basic.get("first_name"),
        last_name=basic.get("last_name"),
        middle_name=basic.get("middle_name"),
        organization_name=basic.get("organization_name") or basic.get("name"),
        credential=basic.get("credential"),
        primary_taxonomy_code=taxonomy.get("code") if taxonomy else None,
        primary_taxonomy_desc=taxonomy.get("desc") if taxonomy else None,
        deactivation_date=basic.get("deactivation_date"),
        addresses=addresses,
    )


class NppesRegistryClient:
    """
    Request-by-identifier client for the NPI Registry.

    ``fetch`` returns None when the registry has no such NPI; that is a valid
    answer, not an error.
    """

    def __init__(self, limiter: TokenBucket, retry_policy: RetryPolicy,
                 api_url: str = DEFAULT_API_URL, api_version: str = "2.1",
                 timeout: float = 30, session: Optional[requests.Session] = None):
        self.limiter = limiter
        self.retry_policy = retry_policy
        self.api_url = api_url
        self.api_version = api_version
        self.timeout = timeout
        self.session = session or requests.Session()
        self.calls_made = 0

    @classmethod
    def from_config(cls, config: Dict, session: Optional[requests.Session] = None) -> "NppesRegistryClient":
        registry = config.get("registry", {})
        return cls(
            limiter=TokenBucket.fixed_interval(registry.get("requests_per_second", 1.0)),
            retry_policy=RetryPolicy.from_config(registry.get("retry", {})),
            api_url=registry.get("api_url", DEFAULT_API_URL),
            api_version=registry.get("api_version", "2.1"),
            timeout=registry.get("timeout_seconds", 30),
            session=session,
        )

    def _request(self, npi: str) -> Dict:
        self.limiter.acquire()
        self.calls_made += 1
        try:
            response = self.session.get(
                self.api_url,
                params={"version": self.api_version, "number": npi},
                timeout=self.timeout,
            )
        except (requests.ConnectionError, requests.Timeout) as e:
            raise TransientExternalError(f"Registry unreachable for {npi}: {e}") from e

        if response.status_code in (401, 403):
            raise FatalExternalError(f"Registry refused request ({response.status_code})")
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientExternalError(f"Registry returned HTTP {response.status_code} for {npi}")
        if response.status_code >= 400:
            raise FatalExternalError(f"Registry rejected request for {npi} ({response.status_code})")

        try:
            return response.json()
        except ValueError as e:
            raise TransientExternalError(f"Registry returned invalid JSON for {npi}") from e

    def fetch(self, npi: str) -> Optional[RegistryRecord]:
        """
        Fetch the canonical record for one NPI.

        Args:
            npi: Ten-digit National Provider Identifier

        Returns:
            RegistryRecord, or None when the NPI is not in the registry

        Raises:
            TransientExternalError: Registry unreachable after all retries
            FatalExternalError: Authorization or request configuration failure
        """
        data = self.retry_policy.call(lambda: self._request(npi), description=f"registry lookup {npi}")

        if data.get("Errors"):
            logger.warning(f"Registry reported errors for {npi}: {data['Errors']}")
            return None

        results = data.get("results") or []
        if not results:
            return None
        return parse_registry_result(results[0])
