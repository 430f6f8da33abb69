"""
Exception types for ProviderTrust.

Rejected merges are not errors; they are recorded as import conflicts.
"""


class ProviderTrustError(Exception):
    """Base class for all ProviderTrust errors."""


class ConfigurationError(ProviderTrustError):
    """Raised when configuration is missing or invalid."""


class TransientExternalError(ProviderTrustError):
    """A network or rate-limit failure that may succeed on retry."""


class FatalExternalError(ProviderTrustError):
    """An authorization or configuration failure that must abort the run."""


class MergeError(ProviderTrustError):
    """A data-integrity failure while applying one source record."""


class DuplicateVerificationError(ProviderTrustError):
    """The same submitter already verified this provider/plan recently."""
