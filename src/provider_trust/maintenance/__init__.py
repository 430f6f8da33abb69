"""
Maintenance sweeps for ProviderTrust.
"""
