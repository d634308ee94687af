class LedgerError(Exception):
    """Base class for registration ledger errors."""


class ValidationError(LedgerError):
    """Raised for malformed input detected before any write."""


class InvalidDelegateType(ValidationError):
    pass


class InvalidAmount(ValidationError):
    pass


class UserNotFound(LedgerError):
    pass


class RegistrationNotFound(LedgerError):
    pass


class SequenceExhausted(LedgerError):
    """Raised when no unused registration number could be drawn."""
