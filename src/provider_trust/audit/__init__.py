"""
Registry reconciliation for ProviderTrust.
"""
