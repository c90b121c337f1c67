"""Inventory audit trail.

Each card or escrow transition writes one inventory_audit_log row on the
same connection (and therefore inside the same transaction) as the change.
"""

import json
import logging
from typing import Any, Dict, Optional
from uuid import UUID

logger = logging.getLogger(__name__)

async def record_audit(
    conn,
    action: str,
    card_instance_id: Optional[UUID] = None,
    escrow_id: Optional[UUID] = None,
    order_id: Optional[UUID] = None,
    from_status: Optional[str] = None,
    to_status: Optional[str] = None,
    actor_user_id: Optional[UUID] = None,
    actor_type: str = 'system',
    reason: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None
) -> None:
    """Insert an audit log row.

    Args:
        conn: Connection the audited change was made on
        action: Short action name (lock, unlock, complete_sale, ...)
        card_instance_id: Affected card instance
        escrow_id: Affected escrow entry
        order_id: Order on whose behalf the change was made
        from_status: Status before the change
        to_status: Status after the change
        actor_user_id: User who requested the change, if known
        actor_type: 'system', 'user' or 'admin'
        reason: Free-form reason code
        metadata: Extra JSON-serialisable details
    """
    await conn.execute(
        '''
        INSERT INTO inventory_audit_log (
            card_instance_id, escrow_id, order_id, action,
            from_status, to_status, actor_user_id, actor_type,
            reason, metadata
        ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10::jsonb)
        ''',
        card_instance_id,
        escrow_id,
        order_id,
        action,
        from_status,
        to_status,
        actor_user_id,
        actor_type,
        reason,
        json.dumps(metadata, default=str) if metadata is not None else None
    )
    logger.debug(f"Audit: {action} card={card_instance_id} escrow={escrow_id} -> {to_status}")
