"""Tests for the integrity auditor."""

import uuid
from datetime import datetime, timedelta, timezone

import pytest

from escrow import IntegrityAuditor
from escrow.integrity import (
    ORPHANED_LOCK,
    DOUBLE_LOCK,
    STALE_LOCK,
    LOCK_MISMATCH,
    CRITICAL,
    WARNING,
    UNLOCK_ORPHANS,
    FIX_STATUS
)
from inventory import IN_VAULT

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

CARD_A = uuid.uuid4()
CARD_B = uuid.uuid4()
CARD_C = uuid.uuid4()
ORDER_A = uuid.uuid4()
ORDER_B = uuid.uuid4()
ESCROW_A = uuid.uuid4()
ESCROW_B = uuid.uuid4()
ESCROW_C = uuid.uuid4()

def make_auditor(pool, record_issues=False):
    return IntegrityAuditor(pool, stale_lock_hours=72, record_issues=record_issues, clock=lambda: NOW)

def script_findings(conn, orphaned=(), double=(), stale=(), mismatched=()):
    conn.fetch.side_effect = [list(orphaned), list(double), list(stale), list(mismatched)]

@pytest.mark.asyncio
async def test_clean_inventory(pool, conn):
    script_findings(conn)

    report = await make_auditor(pool).run_integrity_check()

    assert report.total_issues == 0
    assert report.checked_at == NOW
    conn.execute.assert_not_called()

@pytest.mark.asyncio
async def test_detects_each_issue_type(pool, conn):
    script_findings(
        conn,
        orphaned=[{'escrow_id': ESCROW_A, 'card_instance_id': CARD_A, 'order_id': ORDER_A}],
        double=[{'card_instance_id': CARD_B, 'escrow_ids': [ESCROW_B, ESCROW_C]}],
        stale=[{
            'escrow_id': ESCROW_A,
            'card_instance_id': CARD_A,
            'order_id': ORDER_A,
            'created_at': NOW - timedelta(days=5)
        }],
        mismatched=[{
            'card_instance_id': CARD_C,
            'locked_by_order_id': ORDER_B,
            'escrow_id': None,
            'order_id': None
        }]
    )

    report = await make_auditor(pool).run_integrity_check()

    assert report.total_issues == 4

    orphaned, = report.by_type(ORPHANED_LOCK)
    assert orphaned.severity == CRITICAL
    assert orphaned.card_instance_id == CARD_A
    assert orphaned.escrow_id == ESCROW_A

    double, = report.by_type(DOUBLE_LOCK)
    assert double.severity == CRITICAL
    assert double.escrow_ids == (ESCROW_B, ESCROW_C)
    assert "2 outstanding locks" in double.description

    stale, = report.by_type(STALE_LOCK)
    assert stale.severity == WARNING
    assert "72h" in stale.description

    mismatch, = report.by_type(LOCK_MISMATCH)
    assert mismatch.card_instance_id == CARD_C
    assert mismatch.escrow_ids == ()
    assert "no outstanding escrow" in mismatch.description

@pytest.mark.asyncio
async def test_stale_cutoff_uses_configured_age(pool, conn):
    script_findings(conn)

    await make_auditor(pool).run_integrity_check()

    stale_query = conn.fetch.call_args_list[2]
    assert stale_query.args[1] == NOW - timedelta(hours=72)

@pytest.mark.asyncio
async def test_check_never_modifies_locks(pool, conn):
    script_findings(
        conn,
        orphaned=[{'escrow_id': ESCROW_A, 'card_instance_id': CARD_A, 'order_id': ORDER_A}],
        double=[{'card_instance_id': CARD_B, 'escrow_ids': [ESCROW_B, ESCROW_C]}]
    )

    report = await make_auditor(pool, record_issues=True).run_integrity_check()

    assert report.total_issues == 2
    statements = conn.executed_sql()
    assert len(statements) == 2
    for sql in statements:
        assert 'INSERT INTO inventory_integrity_issues' in sql
        assert 'UPDATE' not in sql
        assert 'DELETE' not in sql
    # Findings are written together
    assert conn.commits == 1

@pytest.mark.asyncio
async def test_record_override(pool, conn):
    script_findings(
        conn,
        orphaned=[{'escrow_id': ESCROW_A, 'card_instance_id': CARD_A, 'order_id': ORDER_A}]
    )

    await make_auditor(pool, record_issues=True).run_integrity_check(record=False)

    conn.execute.assert_not_called()

@pytest.mark.asyncio
async def test_report_to_dict(pool, conn):
    script_findings(
        conn,
        double=[{'card_instance_id': CARD_B, 'escrow_ids': [ESCROW_B, ESCROW_C]}]
    )

    data = (await make_auditor(pool).run_integrity_check()).to_dict()

    assert data['total_issues'] == 1
    assert data['issues'][0]['issue_type'] == DOUBLE_LOCK
    assert data['issues'][0]['escrow_ids'] == [ESCROW_B, ESCROW_C]

@pytest.mark.asyncio
async def test_repair_unknown_type(pool):
    with pytest.raises(ValueError):
        await make_auditor(pool).repair('delete_everything')

@pytest.mark.asyncio
async def test_repair_unlock_orphans(pool, conn):
    admin_id = uuid.uuid4()
    conn.fetch.return_value = [{'id': ESCROW_A, 'card_instance_id': CARD_A, 'order_id': ORDER_A}]

    result = await make_auditor(pool).repair(UNLOCK_ORPHANS, actor_user_id=admin_id)

    assert result == {'released_count': 1, 'escrow_ids': [ESCROW_A]}
    assert "SET status = 'released'" in conn.fetch.call_args.args[0]
    clear_lock, audit, resolve = conn.execute.call_args_list
    assert clear_lock.args[1:] == (CARD_A, ORDER_A)
    assert audit.args[4] == 'repair_unlock_orphans'
    assert audit.args[7] == admin_id
    assert audit.args[8] == 'admin'
    assert resolve.args[1:] == (ORPHANED_LOCK, [ESCROW_A])
    assert conn.commits == 1

@pytest.mark.asyncio
async def test_repair_fix_status(pool, conn):
    conn.fetch.return_value = [{'id': CARD_C}]

    result = await make_auditor(pool).repair(FIX_STATUS, card_instance_id=CARD_C)

    assert result == {'fixed_count': 1, 'card_instance_ids': [CARD_C]}
    assert conn.fetch.call_args.args[1:] == (CARD_C, IN_VAULT)

@pytest.mark.asyncio
async def test_repair_with_nothing_to_fix(pool, conn):
    conn.fetch.return_value = []

    result = await make_auditor(pool).repair(UNLOCK_ORPHANS)

    assert result == {'released_count': 0, 'escrow_ids': []}
    conn.execute.assert_not_called()
