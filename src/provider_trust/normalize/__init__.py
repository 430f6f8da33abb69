"""
Address canonicalization for ProviderTrust.

Produces the canonical address forms and identity hash shared by location
dedup and geocoding fan-out.
"""
