class QuoteVerificationError(Exception):
    """Base verification error."""


class QuotePreconditionError(QuoteVerificationError):
    """Raised when a quote can never be verified as constructed."""
