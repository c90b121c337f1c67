"""Inventory integrity checks.

The auditor looks for card/escrow state that should not exist:

- orphaned_lock: a 'locked' escrow row whose card instance is inactive
- double_lock: more than one 'locked' escrow row for the same card instance
- stale_lock: a 'locked' escrow row older than the staleness threshold
- lock_mismatch: card lock fields that disagree with the escrow rows

Checks only report. Unlocking a stuck lock could release a card that is
still being verified, so remediation is a separate operator action
(``IntegrityAuditor.repair``).
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple
from uuid import UUID

from asyncpg.exceptions import PostgresError

from config import settings_conf
from database import get_pool
from inventory import record_audit, TransactionFailureError, IN_VAULT
from .ledger import LOCKED, RELEASED

logger = logging.getLogger(__name__)

# Issue types
ORPHANED_LOCK = 'orphaned_lock'
DOUBLE_LOCK = 'double_lock'
STALE_LOCK = 'stale_lock'
LOCK_MISMATCH = 'lock_mismatch'

# Severities
INFO = 'info'
WARNING = 'warning'
CRITICAL = 'critical'

# Operator repairs
UNLOCK_ORPHANS = 'unlock_orphans'
FIX_STATUS = 'fix_status'
REPAIR_TYPES = {UNLOCK_ORPHANS, FIX_STATUS}

@dataclass(frozen=True)
class IntegrityIssue:
    """One inconsistency found by an integrity check."""

    issue_type: str
    severity: str
    description: str
    card_instance_id: Optional[UUID]
    escrow_ids: Tuple[UUID, ...]
    detected_at: datetime

    @property
    def escrow_id(self) -> Optional[UUID]:
        return self.escrow_ids[0] if self.escrow_ids else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'issue_type': self.issue_type,
            'severity': self.severity,
            'description': self.description,
            'card_instance_id': self.card_instance_id,
            'escrow_ids': list(self.escrow_ids),
            'detected_at': self.detected_at
        }

@dataclass(frozen=True)
class IntegrityReport:
    """Result of one integrity check run."""

    checked_at: datetime
    issues: List[IntegrityIssue] = field(default_factory=list)

    @property
    def total_issues(self) -> int:
        return len(self.issues)

    def by_type(self, issue_type: str) -> List[IntegrityIssue]:
        return [issue for issue in self.issues if issue.issue_type == issue_type]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'checked_at': self.checked_at,
            'total_issues': self.total_issues,
            'issues': [issue.to_dict() for issue in self.issues]
        }

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)

class IntegrityAuditor:
    """Detects and (on explicit request) repairs inventory drift."""

    def __init__(
        self,
        pool=None,
        stale_lock_hours: Optional[int] = None,
        record_issues: Optional[bool] = None,
        clock: Callable[[], datetime] = _utcnow
    ):
        """Initialize the auditor.

        Args:
            pool: Optional database pool. If not provided, will get from database module.
            stale_lock_hours: Age after which a lock is stale (defaults to settings)
            record_issues: Whether to write findings to inventory_integrity_issues
                (defaults to settings)
            clock: Returns the current time
        """
        self.pool = pool
        self.stale_lock_hours = (
            stale_lock_hours if stale_lock_hours is not None
            else settings_conf['stale_lock_hours']
        )
        self.record_issues = (
            record_issues if record_issues is not None
            else settings_conf['integrity_record_issues']
        )
        self.clock = clock

    async def ensure_pool(self):
        """Ensure we have a database pool."""
        if not self.pool:
            self.pool = await get_pool()

    async def run_integrity_check(self, record: Optional[bool] = None) -> IntegrityReport:
        """Scan card instances and escrow rows for inconsistencies.

        Args:
            record: Override for writing findings to inventory_integrity_issues

        Returns:
            IntegrityReport listing every issue found
        """
        await self.ensure_pool()
        record = self.record_issues if record is None else record
        now = self.clock()
        stale_cutoff = now - timedelta(hours=self.stale_lock_hours)

        async with self.pool.acquire() as conn:
            issues = []
            issues.extend(await self._find_orphaned_locks(conn, now))
            issues.extend(await self._find_double_locks(conn, now))
            issues.extend(await self._find_stale_locks(conn, now, stale_cutoff))
            issues.extend(await self._find_lock_mismatches(conn, now))

            if record and issues:
                await self._record(conn, issues)

        report = IntegrityReport(checked_at=now, issues=issues)
        if report.total_issues:
            logger.warning(f"Integrity check found {report.total_issues} issues")
        else:
            logger.info("Integrity check found no issues")
        return report

    async def _find_orphaned_locks(self, conn, now: datetime) -> List[IntegrityIssue]:
        rows = await conn.fetch(
            '''
            SELECT e.id AS escrow_id, e.card_instance_id, e.order_id
            FROM escrow_transactions e
            JOIN card_instances c ON c.id = e.card_instance_id
            WHERE e.status = 'locked'
            AND c.is_active = false
            ORDER BY e.created_at
            '''
        )
        return [
            IntegrityIssue(
                issue_type=ORPHANED_LOCK,
                severity=CRITICAL,
                description=(
                    f"Escrow {row['escrow_id']} for order {row['order_id']} still locks "
                    f"inactive card instance {row['card_instance_id']}"
                ),
                card_instance_id=row['card_instance_id'],
                escrow_ids=(row['escrow_id'],),
                detected_at=now
            )
            for row in rows
        ]

    async def _find_double_locks(self, conn, now: datetime) -> List[IntegrityIssue]:
        rows = await conn.fetch(
            '''
            SELECT card_instance_id, array_agg(id ORDER BY created_at) AS escrow_ids
            FROM escrow_transactions
            WHERE status = 'locked'
            GROUP BY card_instance_id
            HAVING count(*) > 1
            '''
        )
        return [
            IntegrityIssue(
                issue_type=DOUBLE_LOCK,
                severity=CRITICAL,
                description=(
                    f"Card instance {row['card_instance_id']} has "
                    f"{len(row['escrow_ids'])} outstanding locks"
                ),
                card_instance_id=row['card_instance_id'],
                escrow_ids=tuple(row['escrow_ids']),
                detected_at=now
            )
            for row in rows
        ]

    async def _find_stale_locks(self, conn, now: datetime, cutoff: datetime) -> List[IntegrityIssue]:
        rows = await conn.fetch(
            '''
            SELECT id AS escrow_id, card_instance_id, order_id, created_at
            FROM escrow_transactions
            WHERE status = 'locked'
            AND created_at < $1
            ORDER BY created_at
            ''',
            cutoff
        )
        return [
            IntegrityIssue(
                issue_type=STALE_LOCK,
                severity=WARNING,
                description=(
                    f"Escrow {row['escrow_id']} for order {row['order_id']} has been locked "
                    f"since {row['created_at'].isoformat()} "
                    f"(more than {self.stale_lock_hours}h without resolution)"
                ),
                card_instance_id=row['card_instance_id'],
                escrow_ids=(row['escrow_id'],),
                detected_at=now
            )
            for row in rows
        ]

    async def _find_lock_mismatches(self, conn, now: datetime) -> List[IntegrityIssue]:
        rows = await conn.fetch(
            '''
            SELECT
                c.id AS card_instance_id,
                c.locked_by_order_id,
                e.id AS escrow_id,
                e.order_id
            FROM card_instances c
            LEFT JOIN escrow_transactions e
                ON e.card_instance_id = c.id AND e.status = 'locked'
            WHERE c.is_active = true
            AND (
                (c.locked_at IS NOT NULL AND e.id IS NULL)
                OR (e.id IS NOT NULL AND (
                    c.locked_at IS NULL
                    OR c.locked_by_order_id IS DISTINCT FROM e.order_id
                ))
            )
            '''
        )
        issues = []
        for row in rows:
            if row['escrow_id'] is None:
                description = (
                    f"Card instance {row['card_instance_id']} is marked locked by order "
                    f"{row['locked_by_order_id']} but has no outstanding escrow"
                )
                escrow_ids: Tuple[UUID, ...] = ()
            else:
                description = (
                    f"Card instance {row['card_instance_id']} lock fields "
                    f"(order {row['locked_by_order_id']}) disagree with escrow "
                    f"{row['escrow_id']} (order {row['order_id']})"
                )
                escrow_ids = (row['escrow_id'],)
            issues.append(IntegrityIssue(
                issue_type=LOCK_MISMATCH,
                severity=WARNING,
                description=description,
                card_instance_id=row['card_instance_id'],
                escrow_ids=escrow_ids,
                detected_at=now
            ))
        return issues

    async def _record(self, conn, issues: List[IntegrityIssue]) -> None:
        """Write findings, skipping ones already reported and unresolved."""
        async with conn.transaction():
            for issue in issues:
                await conn.execute(
                    '''
                    INSERT INTO inventory_integrity_issues (
                        issue_type, severity, issue_description,
                        card_instance_id, escrow_id, detected_at
                    )
                    SELECT $1, $2, $3, $4, $5, $6
                    WHERE NOT EXISTS (
                        SELECT 1 FROM inventory_integrity_issues
                        WHERE issue_type = $1
                        AND card_instance_id IS NOT DISTINCT FROM $4
                        AND escrow_id IS NOT DISTINCT FROM $5
                        AND resolved_at IS NULL
                    )
                    ''',
                    issue.issue_type,
                    issue.severity,
                    issue.description,
                    issue.card_instance_id,
                    issue.escrow_id,
                    issue.detected_at
                )

    async def list_unresolved_issues(self, limit: int = 100) -> List[Dict[str, Any]]:
        """List recorded issues that have not been resolved, newest first."""
        await self.ensure_pool()
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                '''
                SELECT * FROM inventory_integrity_issues
                WHERE resolved_at IS NULL
                ORDER BY detected_at DESC
                LIMIT $1
                ''',
                limit
            )
        return [dict(row) for row in rows]

    async def repair(
        self,
        repair_type: str,
        card_instance_id: Optional[UUID] = None,
        actor_user_id: Optional[UUID] = None
    ) -> Dict[str, Any]:
        """Apply an operator-requested repair.

        Args:
            repair_type: 'unlock_orphans' or 'fix_status'
            card_instance_id: Restrict the repair to one card instance
            actor_user_id: Operator performing the repair

        Returns:
            Dict describing what was repaired

        Raises:
            ValueError: If repair_type is unknown
            TransactionFailureError: If the repair transaction fails
        """
        if repair_type not in REPAIR_TYPES:
            raise ValueError(f"Unknown repair type: {repair_type}")

        await self.ensure_pool()
        try:
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    if repair_type == UNLOCK_ORPHANS:
                        result = await self._unlock_orphans(conn, card_instance_id, actor_user_id)
                    else:
                        result = await self._fix_status(conn, card_instance_id, actor_user_id)
        except PostgresError as e:
            logger.error(f"Repair {repair_type} failed: {e}")
            raise TransactionFailureError(f"Repair {repair_type} failed and was rolled back: {e}")

        logger.info(f"Repair {repair_type} by {actor_user_id}: {result}")
        return result

    async def _unlock_orphans(self, conn, card_instance_id, actor_user_id) -> Dict[str, Any]:
        rows = await conn.fetch(
            '''
            UPDATE escrow_transactions e
            SET status = 'released',
                reason = 'orphaned_lock_repair',
                updated_at = now(),
                resolved_at = now()
            FROM card_instances c
            WHERE c.id = e.card_instance_id
            AND e.status = 'locked'
            AND c.is_active = false
            AND ($1::UUID IS NULL OR e.card_instance_id = $1)
            RETURNING e.id, e.card_instance_id, e.order_id
            ''',
            card_instance_id
        )

        for row in rows:
            await conn.execute(
                '''
                UPDATE card_instances
                SET locked_at = NULL,
                    locked_by_order_id = NULL,
                    lock_reason = NULL,
                    updated_at = now()
                WHERE id = $1 AND locked_by_order_id IS NOT DISTINCT FROM $2
                ''',
                row['card_instance_id'],
                row['order_id']
            )
            await record_audit(
                conn,
                'repair_unlock_orphans',
                card_instance_id=row['card_instance_id'],
                escrow_id=row['id'],
                order_id=row['order_id'],
                from_status=LOCKED,
                to_status=RELEASED,
                actor_user_id=actor_user_id,
                actor_type='admin',
                reason='Admin repair action'
            )

        await self._resolve_issues(conn, ORPHANED_LOCK, [row['id'] for row in rows], 'escrow_id')
        return {
            'released_count': len(rows),
            'escrow_ids': [row['id'] for row in rows]
        }

    async def _fix_status(self, conn, card_instance_id, actor_user_id) -> Dict[str, Any]:
        rows = await conn.fetch(
            '''
            UPDATE card_instances c
            SET status = $2,
                locked_at = NULL,
                locked_by_order_id = NULL,
                lock_reason = NULL,
                updated_at = now()
            WHERE c.locked_at IS NOT NULL
            AND c.is_active = true
            AND ($1::UUID IS NULL OR c.id = $1)
            AND NOT EXISTS (
                SELECT 1 FROM escrow_transactions e
                WHERE e.card_instance_id = c.id AND e.status = 'locked'
            )
            RETURNING c.id
            ''',
            card_instance_id,
            IN_VAULT
        )

        for row in rows:
            await record_audit(
                conn,
                'repair_fix_status',
                card_instance_id=row['id'],
                to_status=IN_VAULT,
                actor_user_id=actor_user_id,
                actor_type='admin',
                reason='Admin repair action'
            )

        await self._resolve_issues(conn, LOCK_MISMATCH, [row['id'] for row in rows], 'card_instance_id')
        return {
            'fixed_count': len(rows),
            'card_instance_ids': [row['id'] for row in rows]
        }

    async def _resolve_issues(self, conn, issue_type: str, ids: List[UUID], column: str) -> None:
        if not ids:
            return
        await conn.execute(
            f'''
            UPDATE inventory_integrity_issues
            SET resolved_at = now()
            WHERE issue_type = $1
            AND {column} = ANY($2::UUID[])
            AND resolved_at IS NULL
            ''',
            issue_type,
            ids
        )
