"""Escrow ledger.

An escrow row is a lock held by one order against one card instance. Rows
move in one direction only:

    locked -> completed   (sale finalized, ownership transferred)
    locked -> unlocked    (cancellation or failed verification)
    locked -> released    (operator repair of an orphaned lock)

and are never deleted. The partial unique index on
escrow_transactions(card_instance_id) WHERE status = 'locked' guarantees
that concurrent lock attempts on the same card produce exactly one winner.
"""

import logging
from typing import Any, Dict, List, Optional
from uuid import UUID

from asyncpg.exceptions import PostgresError, UniqueViolationError

from database import get_pool
from inventory import (
    CardInstanceManager,
    record_audit,
    AlreadyLockedError,
    InvalidStateError,
    TransactionFailureError,
    CardInstanceNotFoundError,
    EscrowNotFoundError
)
from inventory import IN_VAULT, RESERVED_CHECKOUT, IN_VERIFICATION
from .lanes import LaneDecision

logger = logging.getLogger(__name__)

# Escrow statuses
LOCKED = 'locked'
RELEASED = 'released'
UNLOCKED = 'unlocked'
COMPLETED = 'completed'

TERMINAL_STATUSES = {RELEASED, UNLOCKED, COMPLETED}
ESCROW_STATUSES = {LOCKED} | TERMINAL_STATUSES

class EscrowLedger:
    """Manages escrow locks against card instances."""

    def __init__(self, pool=None, instances: Optional[CardInstanceManager] = None):
        """Initialize the escrow ledger.

        Args:
            pool: Optional database pool. If not provided, will get from database module.
            instances: Card instance manager used for ownership transfer
        """
        self.pool = pool
        self.instances = instances or CardInstanceManager(pool)

    async def ensure_pool(self):
        """Ensure we have a database pool."""
        if not self.pool:
            self.pool = await get_pool()

    async def lock(
        self,
        card_instance_id: UUID,
        order_id: UUID,
        seller_id: Optional[UUID] = None,
        buyer_id: Optional[UUID] = None,
        sale_amount=None,
        lane_decision: Optional[LaneDecision] = None,
        actor_user_id: Optional[UUID] = None
    ) -> UUID:
        """Lock a card instance for an order.

        Args:
            card_instance_id: Card instance to lock
            order_id: Order acquiring the lock
            seller_id: Selling user, recorded on the escrow row
            buyer_id: Buying user, used as the new owner on completion
            sale_amount: Sale amount, recorded on the escrow row
            lane_decision: Lane chosen for the sale; without one the sale is
                treated as requiring verification
            actor_user_id: User requesting the lock

        Returns:
            ID of the new escrow row

        Raises:
            CardInstanceNotFoundError: If the card is missing or inactive
            AlreadyLockedError: If the card already has an outstanding lock
            TransactionFailureError: If the storage transaction fails
        """
        await self.ensure_pool()

        requires_verification = lane_decision.requires_verification if lane_decision else True
        sale_lane = lane_decision.lane if lane_decision else None
        card_status = IN_VERIFICATION if requires_verification else RESERVED_CHECKOUT

        try:
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    instance = await conn.fetchrow(
                        '''
                        SELECT id, status FROM card_instances
                        WHERE id = $1 AND is_active = true
                        FOR UPDATE
                        ''',
                        card_instance_id
                    )
                    if not instance:
                        raise CardInstanceNotFoundError(
                            f"Card instance {card_instance_id} not found or inactive"
                        )

                    holder = await conn.fetchval(
                        '''
                        SELECT order_id FROM escrow_transactions
                        WHERE card_instance_id = $1 AND status = 'locked'
                        ''',
                        card_instance_id
                    )
                    if holder is not None:
                        raise AlreadyLockedError(card_instance_id, holder)

                    # The partial unique index rejects a concurrent insert that
                    # slipped past the check above
                    escrow_id = await conn.fetchval(
                        '''
                        INSERT INTO escrow_transactions (
                            card_instance_id, order_id, seller_id, buyer_id,
                            sale_amount, sale_lane, requires_verification, status
                        ) VALUES ($1, $2, $3, $4, $5, $6, $7, 'locked')
                        RETURNING id
                        ''',
                        card_instance_id,
                        order_id,
                        seller_id,
                        buyer_id,
                        sale_amount,
                        sale_lane,
                        requires_verification
                    )

                    await conn.execute(
                        '''
                        UPDATE card_instances
                        SET status = $2,
                            locked_at = now(),
                            locked_by_order_id = $3,
                            lock_reason = $4,
                            updated_at = now()
                        WHERE id = $1
                        ''',
                        card_instance_id,
                        card_status,
                        order_id,
                        'escrow_verification' if requires_verification else 'checkout'
                    )

                    await record_audit(
                        conn,
                        'lock',
                        card_instance_id=card_instance_id,
                        escrow_id=escrow_id,
                        order_id=order_id,
                        from_status=instance['status'],
                        to_status=card_status,
                        actor_user_id=actor_user_id,
                        actor_type='user' if actor_user_id else 'system',
                        metadata={'sale_lane': sale_lane, 'sale_amount': sale_amount}
                    )

        except UniqueViolationError:
            logger.warning(
                f"Concurrent lock on card instance {card_instance_id} lost by order {order_id}"
            )
            raise AlreadyLockedError(card_instance_id)
        except AlreadyLockedError:
            logger.warning(f"Card instance {card_instance_id} already locked, order {order_id} rejected")
            raise
        except PostgresError as e:
            logger.error(f"Database error locking card instance {card_instance_id}: {e}")
            raise TransactionFailureError(f"Failed to lock card instance {card_instance_id}: {e}")

        logger.info(f"Locked card instance {card_instance_id} for order {order_id} (escrow {escrow_id})")
        return escrow_id

    async def unlock(
        self,
        card_instance_id: UUID,
        order_id: UUID,
        reason: str,
        actor_user_id: Optional[UUID] = None
    ) -> Dict[str, Any]:
        """Release an order's lock on a card instance.

        Unlocking a pair that has no outstanding lock fails, including a
        second unlock of the same pair.

        Args:
            card_instance_id: Locked card instance
            order_id: Order holding the lock
            reason: Reason code (cancelled, verification_failed, ...)
            actor_user_id: User requesting the unlock

        Returns:
            Dict containing the updated escrow row

        Raises:
            ValueError: If reason is empty
            EscrowNotFoundError: If no outstanding lock matches the pair
            TransactionFailureError: If the storage transaction fails
        """
        if not reason or not reason.strip():
            raise ValueError("An unlock reason is required")

        await self.ensure_pool()

        try:
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    escrow = await conn.fetchrow(
                        '''
                        UPDATE escrow_transactions
                        SET status = 'unlocked',
                            reason = $3,
                            updated_at = now(),
                            resolved_at = now()
                        WHERE card_instance_id = $1
                        AND order_id = $2
                        AND status = 'locked'
                        RETURNING *
                        ''',
                        card_instance_id,
                        order_id,
                        reason
                    )
                    if not escrow:
                        raise EscrowNotFoundError(
                            f"No active lock on card instance {card_instance_id} "
                            f"for order {order_id}"
                        )

                    await self._clear_card_lock(conn, card_instance_id, order_id)

                    await record_audit(
                        conn,
                        'unlock',
                        card_instance_id=card_instance_id,
                        escrow_id=escrow['id'],
                        order_id=order_id,
                        from_status=LOCKED,
                        to_status=UNLOCKED,
                        actor_user_id=actor_user_id,
                        actor_type='user' if actor_user_id else 'system',
                        reason=reason
                    )

        except PostgresError as e:
            logger.error(f"Database error unlocking card instance {card_instance_id}: {e}")
            raise TransactionFailureError(f"Failed to unlock card instance {card_instance_id}: {e}")

        logger.info(f"Unlocked card instance {card_instance_id} for order {order_id}: {reason}")
        return dict(escrow)

    async def complete(
        self,
        order_id: UUID,
        escrow_id: UUID,
        conn,
        new_owner_id: Optional[UUID] = None,
        actor_user_id: Optional[UUID] = None
    ) -> Dict[str, Any]:
        """Complete an escrow entry and transfer the card to the buyer.

        Must run on a connection inside a transaction; the ownership transfer
        and the status change commit or roll back together.

        Args:
            order_id: Order the escrow must belong to
            escrow_id: Escrow entry to complete
            conn: Connection with an open transaction
            new_owner_id: Buyer; defaults to the buyer recorded at lock time
            actor_user_id: User requesting completion

        Returns:
            Dict containing the completed escrow row

        Raises:
            EscrowNotFoundError: If the escrow does not exist or belongs to another order
            InvalidStateError: If the escrow is already terminal or has no buyer
            CardInstanceNotFoundError: If the card instance is missing or inactive
        """
        escrow = await conn.fetchrow(
            'SELECT * FROM escrow_transactions WHERE id = $1 FOR UPDATE',
            escrow_id
        )
        if not escrow or escrow['order_id'] != order_id:
            raise EscrowNotFoundError(f"Escrow {escrow_id} not found for order {order_id}")

        if escrow['status'] != LOCKED:
            logger.warning(
                f"Rejected completion of escrow {escrow_id} in status {escrow['status']}"
            )
            raise InvalidStateError(
                f"Escrow {escrow_id} is already {escrow['status']}; "
                "this sale cannot be completed again",
                escrow_id=escrow_id,
                status=escrow['status']
            )

        buyer_id = new_owner_id or escrow['buyer_id']
        if buyer_id is None:
            raise InvalidStateError(
                f"Escrow {escrow_id} has no buyer to transfer the card to",
                escrow_id=escrow_id,
                status=escrow['status']
            )

        card_instance_id = escrow['card_instance_id']
        await self.instances.transfer_ownership(
            card_instance_id,
            buyer_id,
            conn=conn,
            actor_user_id=actor_user_id,
            order_id=order_id
        )

        completed = await conn.fetchrow(
            '''
            UPDATE escrow_transactions
            SET status = 'completed',
                buyer_id = $2,
                updated_at = now(),
                resolved_at = now()
            WHERE id = $1 AND status = 'locked'
            RETURNING *
            ''',
            escrow_id,
            buyer_id
        )
        if not completed:
            raise InvalidStateError(
                f"Escrow {escrow_id} changed state during completion",
                escrow_id=escrow_id
            )

        await self._clear_card_lock(conn, card_instance_id, order_id)

        await record_audit(
            conn,
            'complete_sale',
            card_instance_id=card_instance_id,
            escrow_id=escrow_id,
            order_id=order_id,
            from_status=LOCKED,
            to_status=COMPLETED,
            actor_user_id=actor_user_id,
            actor_type='user' if actor_user_id else 'system',
            metadata={'buyer_id': buyer_id}
        )
        return dict(completed)

    async def _clear_card_lock(self, conn, card_instance_id: UUID, order_id: UUID) -> None:
        """Return a card held by ``order_id`` to the vault.

        A withdrawn (inactive) card keeps its status; only the lock fields
        are cleared.
        """
        await conn.execute(
            '''
            UPDATE card_instances
            SET status = CASE WHEN is_active THEN $3 ELSE status END,
                locked_at = NULL,
                locked_by_order_id = NULL,
                lock_reason = NULL,
                updated_at = now()
            WHERE id = $1 AND locked_by_order_id = $2
            ''',
            card_instance_id,
            order_id,
            IN_VAULT
        )

    async def get_escrow(self, escrow_id: UUID) -> Dict[str, Any]:
        """Get an escrow entry by ID.

        Raises:
            EscrowNotFoundError: If the escrow does not exist
        """
        await self.ensure_pool()
        async with self.pool.acquire() as conn:
            escrow = await conn.fetchrow(
                'SELECT * FROM escrow_transactions WHERE id = $1',
                escrow_id
            )
        if not escrow:
            raise EscrowNotFoundError(f"Escrow {escrow_id} not found")
        return dict(escrow)

    async def list_escrows(
        self,
        status: Optional[str] = None,
        card_instance_id: Optional[UUID] = None,
        limit: int = 50,
        offset: int = 0
    ) -> List[Dict[str, Any]]:
        """List escrow entries, newest first.

        Args:
            status: Optional status filter
            card_instance_id: Optional card instance filter
            limit: Maximum number of results to return
            offset: Number of results to skip

        Raises:
            ValueError: If status is not a known escrow status
        """
        if status is not None and status not in ESCROW_STATUSES:
            raise ValueError(f"Unknown escrow status: {status}")

        query = 'SELECT * FROM escrow_transactions WHERE 1=1'
        params: List[Any] = []

        if status is not None:
            params.append(status)
            query += f' AND status = ${len(params)}'
        if card_instance_id is not None:
            params.append(card_instance_id)
            query += f' AND card_instance_id = ${len(params)}'

        params.extend([limit, offset])
        query += f' ORDER BY created_at DESC LIMIT ${len(params) - 1} OFFSET ${len(params)}'

        await self.ensure_pool()
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(query, *params)
        return [dict(row) for row in rows]
