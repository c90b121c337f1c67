"""Sale completion.

Completing a sale transfers the card to the buyer and closes the escrow row.
Both writes run inside one database transaction, so a failure at any step
leaves the escrow 'locked' and the card with its seller.
"""

import logging
from typing import Any, Dict, Optional
from uuid import UUID

from asyncpg.exceptions import PostgresError

from database import get_pool
from inventory import InventoryError, TransactionFailureError
from .ledger import EscrowLedger

logger = logging.getLogger(__name__)

class SaleCompletionOrchestrator:
    """Coordinates ownership transfer and escrow completion."""

    def __init__(self, pool=None, ledger: Optional[EscrowLedger] = None):
        """Initialize the orchestrator.

        Args:
            pool: Optional database pool. If not provided, will get from database module.
            ledger: Escrow ledger to complete entries with
        """
        self.pool = pool
        self.ledger = ledger or EscrowLedger(pool)

    async def ensure_pool(self):
        """Ensure we have a database pool."""
        if not self.pool:
            self.pool = await get_pool()

    async def complete_sale(
        self,
        order_id: UUID,
        escrow_id: UUID,
        buyer_id: Optional[UUID] = None,
        actor_user_id: Optional[UUID] = None
    ) -> Dict[str, Any]:
        """Finalize a sale.

        Args:
            order_id: Order being finalized
            escrow_id: Escrow entry held by the order
            buyer_id: New owner; defaults to the buyer recorded at lock time
            actor_user_id: User requesting completion

        Returns:
            Dict containing the completed escrow row

        Raises:
            EscrowNotFoundError: If the escrow does not exist for the order
            InvalidStateError: If the escrow is not locked (e.g. double completion)
            CardInstanceNotFoundError: If the card instance is missing or inactive
            TransactionFailureError: If the storage transaction fails
        """
        await self.ensure_pool()

        try:
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    escrow = await self.ledger.complete(
                        order_id,
                        escrow_id,
                        conn,
                        new_owner_id=buyer_id,
                        actor_user_id=actor_user_id
                    )

        except InventoryError as e:
            logger.warning(f"Sale completion for order {order_id} rejected: {e}")
            raise
        except PostgresError as e:
            logger.error(f"Sale completion transaction for order {order_id} failed: {e}")
            raise TransactionFailureError(
                f"Sale completion for order {order_id} failed and was rolled back: {e}"
            )

        logger.info(
            f"Completed sale for order {order_id}: card instance "
            f"{escrow['card_instance_id']} now owned by {escrow['buyer_id']}"
        )
        return escrow
