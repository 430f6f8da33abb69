"""
Address canonicalization for ProviderTrust.

Computes the address identity hash that lets the geocoder and the merge
engine recognize the same physical place across location rows, and
normalizes phone numbers so equivalent spellings compare equal.
"""

import re
import hashlib
import logging
from typing import Dict, Optional

import usaddress
import phonenumbers
from phonenumbers import PhoneNumberFormat

logger = logging.getLogger(__name__)

STATE_ABBREVIATIONS = {
    "alabama": "AL", "alaska": "AK", "arizona": "AZ", "arkansas": "AR",
    "california": "CA", "colorado": "CO", "connecticut": "CT", "delaware": "DE",
    "florida": "FL", "georgia": "GA", "hawaii": "HI", "idaho": "ID",
    "illinois": "IL", "indiana": "IN", "iowa": "IA", "kansas": "KS",
    "kentucky": "KY", "louisiana": "LA", "maine": "ME", "maryland": "MD",
    "massachusetts": "MA", "michigan": "MI", "minnesota": "MN", "mississippi": "MS",
    "missouri": "MO", "montana": "MT", "nebraska": "NE", "nevada": "NV",
    "new hampshire": "NH", "new jersey": "NJ", "new mexico": "NM", "new york": "NY",
    "north carolina": "NC", "north dakota": "ND", "ohio": "OH", "oklahoma": "OK",
    "oregon": "OR", "pennsylvania": "PA", "rhode island": "RI", "south carolina": "SC",
    "south dakota": "SD", "tennessee": "TN", "texas": "TX", "utah": "UT",
    "vermont": "VT", "virginia": "VA", "washington": "WA", "west virginia": "WV",
    "wisconsin": "WI", "wyoming": "WY", "district of columbia": "DC",
    "puerto rico": "PR",
}

STREET_DIRECTIONS = {
    "north": "n", "south": "s", "east": "e", "west": "w",
    "northeast": "ne", "northwest": "nw", "southeast": "se", "southwest": "sw",
}

STREET_TYPES = {
    "street": "st", "avenue": "ave", "boulevard": "blvd", "drive": "dr",
    "lane": "ln", "road": "rd", "court": "ct", "place": "pl",
    "square": "sq", "terrace": "ter", "highway": "hwy", "circle": "cir",
    "parkway": "pkwy", "suite": "ste",
}


class AddressCanonicalizer:
    """
    Produces canonical address components and their identity hash.

    The hash input is ``line1|city|STATE|zip5`` after canonicalization.
    Line 2 (suite, floor) is deliberately outside the identity so that
    rows for one building share coordinates.
    """

    def __init__(self, config: Optional[Dict] = None):
        """
        Initialize canonicalizer with configuration.

        Args:
            config: Address section of the configuration
        """
        config = config or {}
        self.abbreviate_street_words = config.get("abbreviate_street_words", True)
        self.default_phone_region = config.get("default_phone_region", "US")

        self.punctuation_pattern = re.compile(r"[^\w\s#]")
        self.whitespace_pattern = re.compile(r"\s+")
        self.zip_pattern = re.compile(r"\d{5}")

    def canonical_line(self, line: Optional[str]) -> str:
        """Lowercase, strip punctuation and abbreviate street words."""
        if not line or not isinstance(line, str):
            return ""
        text = self.punctuation_pattern.sub(" ", line.lower())
        tokens = self.whitespace_pattern.sub(" ", text).strip().split(" ")
        if self.abbreviate_street_words:
            tokens = [STREET_DIRECTIONS.get(t, STREET_TYPES.get(t, t)) for t in tokens]
        return " ".join(t for t in tokens if t)

    def canonical_city(self, city: Optional[str]) -> str:
        if not city or not isinstance(city, str):
            return ""
        text = self.punctuation_pattern.sub(" ", city.lower())
        return self.whitespace_pattern.sub(" ", text).strip()

    def canonical_state(self, state: Optional[str]) -> str:
        """
        Normalize a state name or abbreviation.

        Args:
            state: Raw state value

        Returns:
            Two-letter uppercase abbreviation, or the trimmed uppercase input
            when it is not a recognized state name
        """
        if not state or not isinstance(state, str):
            return ""
        cleaned = state.strip().lower()
        if len(cleaned) == 2 and cleaned.isalpha():
            return cleaned.upper()
        return STATE_ABBREVIATIONS.get(cleaned, cleaned.upper())

    def canonical_zip(self, zip_code: Optional[str]) -> str:
        if zip_code is None:
            return ""
        match = self.zip_pattern.search(str(zip_code))
        return match.group(0) if match else ""

    def address_hash(self, line1: Optional[str], city: Optional[str],
                     state: Optional[str], zip_code: Optional[str]) -> Optional[str]:
        """
        Compute the address identity hash.

        Args:
            line1: Street address line
            city: City name
            state: State name or abbreviation
            zip_code: ZIP or ZIP+4

        Returns:
            Hex SHA-256 digest, or None when line 1 or city is missing
        """
        canonical_line1 = self.canonical_line(line1)
        canonical_city = self.canonical_city(city)
        if not canonical_line1 or not canonical_city:
            return None

        key = "|".join([
            canonical_line1,
            canonical_city,
            self.canonical_state(state),
            self.canonical_zip(zip_code),
        ])
        return hashlib.sha256(key.encode("utf-8")).hexdigest()

    def parse_freeform(self, address: str) -> Dict[str, str]:
        """
        Split a one-line address into location components with usaddress.

        Args:
            address: Free-form address string

        Returns:
            Dictionary with address_line1, city, state and zip_code keys
        """
        empty = {"address_line1": "", "city": "", "state": "", "zip_code": ""}
        if not address or not isinstance(address, str):
            return empty

        try:
            tagged, _ = usaddress.tag(address)
        except usaddress.RepeatedLabelError as e:
            logger.warning(f"Could not parse address '{address}': {e}")
            return {**empty, "address_line1": address.strip()}

        street_labels = [
            "AddressNumber", "StreetNamePreDirectional", "StreetName",
            "StreetNamePostType", "StreetNamePostDirectional",
        ]
        line1 = " ".join(tagged[label] for label in street_labels if tagged.get(label))
        return {
            "address_line1": line1,
            "city": tagged.get("PlaceName", ""),
            "state": tagged.get("StateName", ""),
            "zip_code": tagged.get("ZipCode", ""),
        }

    def normalize_phone(self, phone: Optional[str]) -> Optional[str]:
        """
        Normalize a phone or fax number to E.164.

        Numbers phonenumbers cannot parse fall back to their digits only.
        """
        if phone is None:
            return None
        text = str(phone).strip()
        if not text:
            return None
        try:
            parsed = phonenumbers.parse(text, self.default_phone_region)
            if phonenumbers.is_valid_number(parsed):
                return phonenumbers.format_number(parsed, PhoneNumberFormat.E164)
        except phonenumbers.NumberParseException:
            pass
        return re.sub(r"\D", "", text) or None


_default_canonicalizer = AddressCanonicalizer()


def compute_address_hash(line1: Optional[str], city: Optional[str],
                         state: Optional[str], zip_code: Optional[str]) -> Optional[str]:
    """Convenience wrapper around the default canonicalizer."""
    return _default_canonicalizer.address_hash(line1, city, state, zip_code)
