class ReferralError(Exception):
    """base class for everything the referral core raises on purpose."""


class NotFoundError(ReferralError, ValueError):
    """a user, email, referral code or recipient does not resolve."""


class ValidationError(ReferralError, ValueError):
    """malformed input: missing id, bad referral code format, bad partner type."""


class StoreError(ReferralError):
    """the persistence layer failed (connection, constraint violation, ...)."""

    def __init__(self, operation: str, message: str):
        super().__init__(f"{operation}: {message}")
        self.operation = operation


class ReferralCodeExhaustedError(ReferralError):
    """could not find a free referral code within the allowed attempts."""
