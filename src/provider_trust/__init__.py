"""
ProviderTrust - Provenance-aware reconciliation for a crowd-verified
healthcare provider directory.

Merges provider data from sources of differing trust, reconciles it against
the NPI registry, geocodes practice addresses and scores insurance plan
acceptance from crowd verifications.
"""

__version__ = "1.0.0"
__author__ = "ProviderTrust Team"
