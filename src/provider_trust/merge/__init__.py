"""
Provenance merge engine for ProviderTrust.

Every field write is arbitrated by source tier; rejected writes become
import conflicts for review.
"""
