"""
Rate limiting and retry policy for external services.
"""
