"""Inventory module for individually tracked physical cards.

This module provides functionality for:
- Registering card instances when they enter tracked inventory
- Looking up instances and listing a user's active instances
- Transferring ownership when a sale completes
- Withdrawing (soft-deleting) instances

It never touches escrow rows: sequencing ownership transfer with escrow
completion is the caller's job (see escrow.SaleCompletionOrchestrator).
"""

import logging
from contextlib import asynccontextmanager
from decimal import Decimal, InvalidOperation
from typing import Dict, List, Optional, Any
from uuid import UUID

from database import get_pool
from .audit import record_audit
from .exceptions import (
    InventoryError,
    NotFoundError,
    AlreadyLockedError,
    InvalidStateError,
    TransactionFailureError,
    CardInstanceNotFoundError,
    EscrowNotFoundError
)

logger = logging.getLogger(__name__)

# Custody states of a card instance
IN_VAULT = 'in_vault'
LISTED_FOR_SALE = 'listed_for_sale'
RESERVED_CHECKOUT = 'reserved_checkout'
SOLD_PENDING = 'sold_pending'
IN_VERIFICATION = 'in_verification'
COMPLETED = 'completed'
DISPUTED = 'disputed'
WITHDRAWN = 'withdrawn'

CUSTODY_STATUSES = {
    IN_VAULT,
    LISTED_FOR_SALE,
    RESERVED_CHECKOUT,
    SOLD_PENDING,
    IN_VERIFICATION,
    COMPLETED,
    DISPUTED,
    WITHDRAWN
}

class CardInstanceManager:
    """Manager class for card instance records."""

    def __init__(self, pool=None):
        """Initialize the card instance manager.

        Args:
            pool: Optional database pool. If not provided, will get from database module.
        """
        self.pool = pool

    async def ensure_pool(self):
        """Ensure we have a database pool."""
        if not self.pool:
            self.pool = await get_pool()

    @asynccontextmanager
    async def _connection(self, conn=None):
        """Use the caller's connection if given, otherwise acquire one."""
        if conn is not None:
            yield conn
            return
        await self.ensure_pool()
        async with self.pool.acquire() as acquired:
            yield acquired

    async def create_instance(
        self,
        owner_user_id: UUID,
        title: str,
        category: Optional[str] = None,
        series: Optional[str] = None,
        grade: Optional[str] = None,
        current_value: Any = Decimal('0'),
        status: str = IN_VAULT,
        actor_user_id: Optional[UUID] = None
    ) -> Dict[str, Any]:
        """Register a card instance in tracked inventory.

        Args:
            owner_user_id: Owning user
            title: Display title of the card
            category: Optional category (e.g. pokemon, sports)
            series: Optional set/series name
            grade: Optional grade label
            current_value: Value snapshot in currency units
            status: Initial custody status
            actor_user_id: User performing the intake

        Returns:
            Dict containing the created instance

        Raises:
            ValueError: If the value or status is invalid
        """
        try:
            value = Decimal(str(current_value))
        except (InvalidOperation, TypeError, ValueError):
            raise ValueError(f"Invalid card value: {current_value}")
        if value < 0:
            raise ValueError("Card value cannot be negative")
        if status not in CUSTODY_STATUSES or status == WITHDRAWN:
            raise ValueError(f"Invalid initial status: {status}")

        await self.ensure_pool()
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                instance = await conn.fetchrow(
                    '''
                    INSERT INTO card_instances (
                        owner_user_id, title, category, series, grade,
                        current_value, status
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7)
                    RETURNING *
                    ''',
                    owner_user_id, title, category, series, grade, value, status
                )
                await record_audit(
                    conn,
                    'create_instance',
                    card_instance_id=instance['id'],
                    to_status=status,
                    actor_user_id=actor_user_id,
                    actor_type='user' if actor_user_id else 'system'
                )

        logger.info(f"Registered card instance {instance['id']} for owner {owner_user_id}")
        return dict(instance)

    async def get_instance(self, instance_id: UUID, conn=None) -> Dict[str, Any]:
        """Get a card instance by ID.

        Args:
            instance_id: Card instance ID
            conn: Optional connection to read on

        Returns:
            Dict containing the instance

        Raises:
            CardInstanceNotFoundError: If the instance does not exist
        """
        async with self._connection(conn) as c:
            instance = await c.fetchrow(
                'SELECT * FROM card_instances WHERE id = $1',
                instance_id
            )

        if not instance:
            raise CardInstanceNotFoundError(f"Card instance {instance_id} not found")
        return dict(instance)

    async def list_active_for_owner(self, user_id: UUID) -> List[Dict[str, Any]]:
        """List all active card instances owned by a user, newest first.

        Args:
            user_id: Owning user

        Returns:
            List of instance dicts (empty if the user owns nothing)
        """
        async with self._connection() as conn:
            rows = await conn.fetch(
                '''
                SELECT * FROM card_instances
                WHERE owner_user_id = $1 AND is_active = true
                ORDER BY created_at DESC
                ''',
                user_id
            )
        return [dict(row) for row in rows]

    async def transfer_ownership(
        self,
        instance_id: UUID,
        new_owner_id: UUID,
        conn=None,
        actor_user_id: Optional[UUID] = None,
        order_id: Optional[UUID] = None
    ) -> Dict[str, Any]:
        """Transfer a card instance to a new owner.

        Escrow state is not touched. When called with ``conn`` the update joins
        the caller's transaction; otherwise it runs in a transaction of its own.

        Args:
            instance_id: Card instance ID
            new_owner_id: User receiving the card
            conn: Optional connection (inside a transaction) to run on
            actor_user_id: User requesting the transfer
            order_id: Order the transfer belongs to, for the audit trail

        Returns:
            Dict containing the updated instance

        Raises:
            CardInstanceNotFoundError: If the instance is missing or inactive
        """
        if conn is not None:
            return await self._transfer(conn, instance_id, new_owner_id, actor_user_id, order_id)

        async with self._connection() as c:
            async with c.transaction():
                return await self._transfer(c, instance_id, new_owner_id, actor_user_id, order_id)

    async def _transfer(self, conn, instance_id, new_owner_id, actor_user_id, order_id) -> Dict[str, Any]:
        current = await conn.fetchrow(
            '''
            SELECT owner_user_id FROM card_instances
            WHERE id = $1 AND is_active = true
            FOR UPDATE
            ''',
            instance_id
        )
        if not current:
            raise CardInstanceNotFoundError(
                f"Card instance {instance_id} not found or inactive"
            )

        instance = await conn.fetchrow(
            '''
            UPDATE card_instances
            SET owner_user_id = $2,
                updated_at = now()
            WHERE id = $1
            RETURNING *
            ''',
            instance_id,
            new_owner_id
        )
        await record_audit(
            conn,
            'transfer_ownership',
            card_instance_id=instance_id,
            order_id=order_id,
            actor_user_id=actor_user_id,
            metadata={
                'from_owner': current['owner_user_id'],
                'to_owner': new_owner_id
            }
        )
        logger.info(
            f"Transferred card instance {instance_id} from "
            f"{current['owner_user_id']} to {new_owner_id}"
        )
        return dict(instance)

    async def deactivate_instance(
        self,
        instance_id: UUID,
        reason: str,
        actor_user_id: Optional[UUID] = None
    ) -> Dict[str, Any]:
        """Withdraw a card instance from tracked inventory.

        Instances are never deleted; they are marked inactive.

        Args:
            instance_id: Card instance ID
            reason: Why the instance is withdrawn
            actor_user_id: User requesting the withdrawal

        Returns:
            Dict containing the deactivated instance

        Raises:
            CardInstanceNotFoundError: If the instance is missing or already inactive
            InvalidStateError: If the instance is held by an outstanding lock
        """
        async with self._connection() as conn:
            async with conn.transaction():
                current = await conn.fetchrow(
                    '''
                    SELECT * FROM card_instances
                    WHERE id = $1 AND is_active = true
                    FOR UPDATE
                    ''',
                    instance_id
                )
                if not current:
                    raise CardInstanceNotFoundError(
                        f"Card instance {instance_id} not found or inactive"
                    )

                active_lock = await conn.fetchval(
                    '''
                    SELECT id FROM escrow_transactions
                    WHERE card_instance_id = $1 AND status = 'locked'
                    ''',
                    instance_id
                )
                if active_lock or current['locked_at'] is not None:
                    raise InvalidStateError(
                        f"Card instance {instance_id} is locked by an order; "
                        "unlock or complete the sale before withdrawing it",
                        escrow_id=active_lock
                    )

                instance = await conn.fetchrow(
                    '''
                    UPDATE card_instances
                    SET is_active = false,
                        status = $2,
                        updated_at = now()
                    WHERE id = $1
                    RETURNING *
                    ''',
                    instance_id,
                    WITHDRAWN
                )
                await record_audit(
                    conn,
                    'deactivate_instance',
                    card_instance_id=instance_id,
                    from_status=current['status'],
                    to_status=WITHDRAWN,
                    actor_user_id=actor_user_id,
                    actor_type='user' if actor_user_id else 'system',
                    reason=reason
                )

        logger.info(f"Deactivated card instance {instance_id}: {reason}")
        return dict(instance)

    async def get_stats(self) -> Dict[str, Any]:
        """Get inventory counts for the admin dashboard.

        Returns:
            Dict with total, active and locked counts plus counts by status
        """
        async with self._connection() as conn:
            totals = await conn.fetchrow(
                '''
                SELECT
                    count(*) AS total,
                    count(*) FILTER (WHERE is_active) AS active,
                    count(*) FILTER (WHERE locked_at IS NOT NULL) AS locked
                FROM card_instances
                '''
            )
            by_status = await conn.fetch(
                '''
                SELECT status, count(*) AS count
                FROM card_instances
                GROUP BY status
                '''
            )

        return {
            'total': totals['total'],
            'active': totals['active'],
            'locked': totals['locked'],
            'by_status': {row['status']: row['count'] for row in by_status}
        }

__all__ = [
    'CardInstanceManager',
    'record_audit',
    'InventoryError',
    'NotFoundError',
    'AlreadyLockedError',
    'InvalidStateError',
    'TransactionFailureError',
    'CardInstanceNotFoundError',
    'EscrowNotFoundError',
    'CUSTODY_STATUSES'
]
