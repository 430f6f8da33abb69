"""
Source tiers for field provenance.

A higher value means a more trusted origin. The ordering is fixed for the
provider directory and is not configurable.
"""

from enum import IntEnum


class SourceTier(IntEnum):
    REGISTRY = 10
    BULK_SCRAPE = 70
    ENRICHMENT_IMPORT = 80
    CROWD_VERIFIED = 90

    @property
    def label(self) -> str:
        """Name stored in provenance and conflict rows."""
        return self.name.lower()

    @classmethod
    def parse(cls, value) -> "SourceTier":
        """
        Resolve a tier from its label, name or numeric value.

        Args:
            value: e.g. ``"enrichment_import"``, ``SourceTier.REGISTRY`` or ``80``

        Returns:
            The matching SourceTier
        """
        if isinstance(value, cls):
            return value
        if isinstance(value, int):
            return cls(value)
        if value is None:
            raise ValueError("Source tier is required")
        key = str(value).strip().upper()
        if key.isdigit():
            return cls(int(key))
        try:
            return cls[key]
        except KeyError:
            raise ValueError(f"Unknown source tier: {value!r}") from None


DEFAULT_TIER = SourceTier.REGISTRY
