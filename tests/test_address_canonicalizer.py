"""
Unit tests for address canonicalization.
"""

import pytest
import sys
from pathlib import Path

# Add src to path
sys.path.append(str(Path(__file__).parent.parent / "src"))

from provider_trust.normalize.address_canonicalizer import AddressCanonicalizer, compute_address_hash


class TestAddressCanonicalizer:
    """Test cases for canonical address forms and the identity hash."""

    def setup_method(self):
        """Setup test fixtures."""
        self.config = {
            "abbreviate_street_words": True,
            "default_phone_region": "US"
        }
        self.canonicalizer = AddressCanonicalizer(self.config)

    def test_canonical_line(self):
        """Test street line canonicalization."""
        assert self.canonicalizer.canonical_line("123 Main Street, Suite 4") == "123 main st ste 4"
        assert self.canonicalizer.canonical_line("600 North Wolfe St.") == "600 n wolfe st"
        assert self.canonicalizer.canonical_line("  9500   Euclid Avenue ") == "9500 euclid ave"
        assert self.canonicalizer.canonical_line("") == ""
        assert self.canonicalizer.canonical_line(None) == ""

    def test_canonical_line_without_abbreviation(self):
        """Test that abbreviation can be switched off."""
        canonicalizer = AddressCanonicalizer({"abbreviate_street_words": False})
        assert canonicalizer.canonical_line("123 Main Street") == "123 main street"

    def test_canonical_state(self):
        """Test state canonicalization."""
        assert self.canonicalizer.canonical_state("New York") == "NY"
        assert self.canonicalizer.canonical_state("ny") == "NY"
        assert self.canonicalizer.canonical_state(" Maryland ") == "MD"
        assert self.canonicalizer.canonical_state("Ontario") == "ONTARIO"
        assert self.canonicalizer.canonical_state(None) == ""

    def test_canonical_zip(self):
        """Test ZIP canonicalization."""
        assert self.canonicalizer.canonical_zip("21287-0001") == "21287"
        assert self.canonicalizer.canonical_zip("212870001") == "21287"
        assert self.canonicalizer.canonical_zip("12-34") == ""
        assert self.canonicalizer.canonical_zip(None) == ""

    def test_address_hash_equivalent_spellings(self):
        """Equivalent spellings of one place share a hash."""
        a = self.canonicalizer.address_hash("123 Main Street", "Springfield", "Illinois", "62701-1234")
        b = self.canonicalizer.address_hash("123 main st.", "SPRINGFIELD", "IL", "62701")
        assert a is not None
        assert a == b
        assert len(a) == 64

    def test_address_hash_distinct_places(self):
        """Different places hash differently."""
        a = self.canonicalizer.address_hash("123 Main St", "Springfield", "IL", "62701")
        b = self.canonicalizer.address_hash("125 Main St", "Springfield", "IL", "62701")
        c = self.canonicalizer.address_hash("123 Main St", "Springfield", "MO", "62701")
        assert len({a, b, c}) == 3

    def test_address_hash_requires_line_and_city(self):
        """Test that an address without street line or city has no identity."""
        assert self.canonicalizer.address_hash("", "Springfield", "IL", "62701") is None
        assert self.canonicalizer.address_hash("123 Main St", None, "IL", "62701") is None

    def test_module_level_hash_matches(self):
        """Test the convenience wrapper."""
        assert compute_address_hash("123 Main St", "Springfield", "IL", "62701") == \
            self.canonicalizer.address_hash("123 Main Street", "Springfield", "IL", "62701")

    def test_normalize_phone(self):
        """Test phone normalization."""
        assert self.canonicalizer.normalize_phone("(410) 955-5000") == "+14109555000"
        assert self.canonicalizer.normalize_phone("410-955-5000") == "+14109555000"
        assert self.canonicalizer.normalize_phone("") is None
        assert self.canonicalizer.normalize_phone(None) is None
        assert self.canonicalizer.normalize_phone("abc") is None

    def test_parse_freeform(self):
        """Test free-form address parsing."""
        parsed = self.canonicalizer.parse_freeform("600 N Wolfe St, Baltimore, MD 21287")
        assert parsed["address_line1"].startswith("600")
        assert parsed["city"] == "Baltimore"
        assert parsed["state"] == "MD"
        assert parsed["zip_code"] == "21287"

    def test_parse_freeform_empty(self):
        """Test parsing of empty input."""
        parsed = self.canonicalizer.parse_freeform("")
        assert parsed == {"address_line1": "", "city": "", "state": "", "zip_code": ""}


if __name__ == "__main__":
    pytest.main([__file__])
