"""
Review exports for ProviderTrust.
"""
