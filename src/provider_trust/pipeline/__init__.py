"""
Batch entry points for ProviderTrust.
"""
