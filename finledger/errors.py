class LedgerError(Exception):
    """Base exception for ledger operations."""


class NotFound(LedgerError):
    """A referenced account, transaction or schedule does not exist."""


class InvalidArgument(LedgerError, ValueError):
    """Raised when an operation is called with values that fail validation."""


class PriceUnavailable(LedgerError):
    """No price (or exchange rate) could be resolved for an instrument."""


class RateLimited(LedgerError):
    """The quote provider is throttling requests; retry later or enter the price manually."""


class StoreUnavailable(LedgerError):
    """The backing datastore could not be reached."""
