"""
Errors raised by the store helpers and the order core.

The routing layer in main.py turns these into HTTP responses.
"""


class ShopError(Exception):
    pass


class ValidationError(ShopError):
    """A required input field is missing or malformed."""


class NotFoundError(ShopError):
    """The requested record does not exist."""


class ResolutionError(ShopError):
    """A referenced record (product, user) could not be resolved."""


class CreationError(ShopError):
    """A multi-step creation failed partway through."""


class StoreUnavailableError(ShopError):
    """No database connection is configured."""
