"""
Error taxonomy for key allocation and the purchase ledger.

Only PoolExhausted and RotationCapacityError are raised to callers of the
allocation path; the others are logged and handled where they occur.
"""


class KeyshopError(Exception):
    """Base class for all storefront errors."""

    tag = 'error'


class PoolExhausted(KeyshopError):
    """No unissued key is left in the pool. The operator must top it up."""

    tag = 'pool_exhausted'

    def __init__(self, message='No license keys available'):
        super().__init__(message)


class BackendUnavailable(KeyshopError):
    """A storage backend read or write failed."""

    tag = 'backend_unavailable'


class RotationCapacityError(KeyshopError):
    """Not enough unused keys to rotate every outstanding purchase."""

    tag = 'rotation_capacity'

    def __init__(self, needed: int, available: int):
        self.needed = needed
        self.available = available
        super().__init__(
            f"Not enough unused keys to rotate. Need {needed}, have {available}."
        )


class RecordNotFound(KeyshopError):
    """No purchase record matches the given email/key pair."""

    tag = 'record_not_found'


class MalformedPoolDocument(KeyshopError):
    """A key-pool or tier document could not be parsed."""

    tag = 'malformed_document'
