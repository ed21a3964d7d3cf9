"""Inventory ledger error taxonomy.

Every error is a ``ValueError`` so callers that only care about "the request
was rejected" can keep catching ``ValueError``. ``status_code`` is the HTTP
status the routers answer with; ``retryable`` tells callers whether an
automatic retry (with backoff) makes sense.
"""


class InventoryError(ValueError):
    status_code = 400
    retryable = False


class NotFoundError(InventoryError):
    status_code = 404


class InvalidQuantityError(InventoryError):
    status_code = 400


class InvalidMovementTypeError(InventoryError):
    status_code = 400


class NegativeQuantityError(InventoryError):
    status_code = 409


class ReservedExceedsQuantityError(InventoryError):
    status_code = 409


class InsufficientStockError(InventoryError):
    status_code = 409


class MaxLevelExceededError(InventoryError):
    status_code = 409


class SameLocationError(InventoryError):
    status_code = 400


class InventoryExistsError(InventoryError):
    status_code = 409


class OperationCancelledError(InventoryError):
    status_code = 409


class LockTimeoutError(InventoryError):
    status_code = 503
    retryable = True


class StoreError(InventoryError):
    """Wraps a failure raised by the underlying transactional store."""

    status_code = 500

    def __init__(self, message: str, *, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable
