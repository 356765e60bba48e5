# Overview: Error taxonomy shared by the request, ledger and allocation services.

"""
Stockflow error taxonomy.

Expected, caller-recoverable conditions:
- ValidationError        400  malformed input (quantity < 1, missing id)
- PermissionDeniedError  403  caller does not own the resource / wrong role
- NotFoundError          404  unknown request, product, lot or recipient
- StateError             409  operation invalid for the current lifecycle state
- InsufficientStockError 409  central stock or lot availability too low
- DuplicateError         409  idempotency guard tripped

Fatal internal-consistency conditions (surfaced to operators, never to the
end user as a normal failure):
- OverAllocationError    500  a lot would leave 0 <= allocated <= total
- RollbackError          500  a compensating rollback step could not be applied
"""

from __future__ import annotations


class StockflowError(Exception):
    """Base class for every error raised by the fulfillment core."""

    http_status = 500
    fatal = False

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        return {"error": self.message, **self.details}


class ValidationError(StockflowError):
    """400-level input problem."""

    http_status = 400


class PermissionDeniedError(StockflowError):
    http_status = 403


class NotFoundError(StockflowError):
    http_status = 404


class StateError(StockflowError):
    """Operation is not valid for the entity's current lifecycle state."""

    http_status = 409


class PaymentNotVerifiedError(StateError):
    """Approval attempted before the payment receipt was verified."""


class InsufficientStockError(StockflowError):
    """
    Central stock or lot availability cannot satisfy the requested quantity.

    `available` is how many units could have been satisfied, so the caller
    can retry with a feasible amount.
    """

    http_status = 409

    def __init__(self, message: str, *, available: int, requested: int):
        super().__init__(message, available=available, requested=requested)
        self.available = available
        self.requested = requested


class DuplicateError(StockflowError):
    http_status = 409


class OverAllocationError(StockflowError):
    """Ledger invariant would be violated. Always a bug, never user error."""

    fatal = True

    def __init__(self, message: str, *, lot_id: int | None = None, delta: int | None = None):
        super().__init__(message, lot_id=lot_id, delta=delta)
        self.lot_id = lot_id
        self.delta = delta


class RollbackError(StockflowError):
    """A compensating rollback step failed; the ledger may be inconsistent."""

    fatal = True
