"""Inventory and escrow error taxonomy.

Every error carries a stable ``code`` for API responses and a message that
tells the caller what to do next. None of these are retried internally;
only TransactionFailureError is a reasonable candidate for a caller retry.
"""
from typing import Optional
from uuid import UUID

class InventoryError(Exception):
    """Base class for inventory and escrow errors."""
    code = 'inventory_error'
    retryable = False

class NotFoundError(InventoryError):
    """Raised when a card instance or escrow entry does not exist or is not
    in the state the operation expects."""
    code = 'not_found'

class AlreadyLockedError(InventoryError):
    """Raised when a card instance already has an outstanding lock."""
    code = 'already_locked'

    def __init__(self, card_instance_id: UUID, order_id: Optional[UUID] = None):
        self.card_instance_id = card_instance_id
        self.order_id = order_id
        super().__init__(
            f"Card instance {card_instance_id} was just locked by another order. "
            "Choose a different listing or try again once the sale is resolved."
        )

class InvalidStateError(InventoryError):
    """Raised when an escrow entry is not in the state an operation requires.

    Usually a double submission (e.g. completing the same escrow twice) or an
    upstream logic bug.
    """
    code = 'invalid_state'

    def __init__(self, message: str, escrow_id: Optional[UUID] = None, status: Optional[str] = None):
        self.escrow_id = escrow_id
        self.status = status
        super().__init__(message)

class TransactionFailureError(InventoryError):
    """Raised when the storage transaction of a multi-step write fails.

    The transaction was rolled back, so no partial effect is visible.
    """
    code = 'transaction_failure'
    retryable = True

class CardInstanceNotFoundError(NotFoundError):
    """Raised when a card instance is missing or no longer active."""
    pass

class EscrowNotFoundError(NotFoundError):
    """Raised when no escrow entry matches the requested card, order or id."""
    pass
