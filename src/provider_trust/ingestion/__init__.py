"""
Field-update ingestion for ProviderTrust.
"""
