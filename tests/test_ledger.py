"""Tests for the escrow ledger."""

import uuid
from decimal import Decimal

import pytest
from asyncpg.exceptions import PostgresError, UniqueViolationError

from escrow import (
    EscrowLedger,
    LaneThresholds,
    decide_lane,
    AlreadyLockedError,
    InvalidStateError,
    TransactionFailureError,
    CardInstanceNotFoundError,
    EscrowNotFoundError,
    NotFoundError,
    LOCKED,
    UNLOCKED,
    COMPLETED
)
from inventory import IN_VAULT, RESERVED_CHECKOUT, IN_VERIFICATION

CARD_ID = uuid.uuid4()
ORDER_ID = uuid.uuid4()
ESCROW_ID = uuid.uuid4()
SELLER_ID = uuid.uuid4()
BUYER_ID = uuid.uuid4()

THRESHOLDS = LaneThresholds()

@pytest.fixture
def ledger(pool):
    return EscrowLedger(pool)

def escrow_row(status=LOCKED, **overrides):
    row = {
        'id': ESCROW_ID,
        'card_instance_id': CARD_ID,
        'order_id': ORDER_ID,
        'seller_id': SELLER_ID,
        'buyer_id': BUYER_ID,
        'sale_amount': Decimal('150'),
        'status': status
    }
    row.update(overrides)
    return row

@pytest.mark.asyncio
async def test_lock_creates_escrow(ledger, conn):
    conn.fetchrow.return_value = {'id': CARD_ID, 'status': IN_VAULT}
    conn.fetchval.side_effect = [None, ESCROW_ID]

    lock_id = await ledger.lock(CARD_ID, ORDER_ID, seller_id=SELLER_ID, buyer_id=BUYER_ID)

    assert lock_id == ESCROW_ID
    assert conn.commits == 1
    assert conn.rollbacks == 0

    insert = conn.fetchval.call_args_list[1]
    assert 'INSERT INTO escrow_transactions' in insert.args[0]
    # Without a lane decision the sale is held for verification
    assert insert.args[7] is True

    card_update = conn.execute.call_args_list[0]
    assert 'UPDATE card_instances' in card_update.args[0]
    assert card_update.args[1:4] == (CARD_ID, IN_VERIFICATION, ORDER_ID)

    audit = conn.execute.call_args_list[1]
    assert 'INSERT INTO inventory_audit_log' in audit.args[0]
    assert audit.args[4] == 'lock'

@pytest.mark.asyncio
async def test_instant_lock_reserves_card(ledger, conn):
    conn.fetchrow.return_value = {'id': CARD_ID, 'status': IN_VAULT}
    conn.fetchval.side_effect = [None, ESCROW_ID]
    decision = decide_lane(92, 150, THRESHOLDS)

    await ledger.lock(CARD_ID, ORDER_ID, lane_decision=decision)

    insert = conn.fetchval.call_args_list[1]
    assert insert.args[6] == 'instant'
    assert insert.args[7] is False
    assert conn.execute.call_args_list[0].args[2] == RESERVED_CHECKOUT

@pytest.mark.asyncio
async def test_lock_missing_card(ledger, conn):
    conn.fetchrow.return_value = None

    with pytest.raises(CardInstanceNotFoundError):
        await ledger.lock(CARD_ID, ORDER_ID)

    assert conn.rollbacks == 1
    conn.fetchval.assert_not_called()

@pytest.mark.asyncio
async def test_lock_rejected_when_card_already_locked(ledger, conn):
    other_order = uuid.uuid4()
    conn.fetchrow.return_value = {'id': CARD_ID, 'status': IN_VERIFICATION}
    conn.fetchval.side_effect = [other_order]

    with pytest.raises(AlreadyLockedError) as exc_info:
        await ledger.lock(CARD_ID, ORDER_ID)

    assert exc_info.value.order_id == other_order
    assert exc_info.value.code == 'already_locked'
    assert "different listing" in str(exc_info.value)
    assert conn.fetchval.call_count == 1
    conn.execute.assert_not_called()
    assert conn.rollbacks == 1

@pytest.mark.asyncio
async def test_concurrent_lock_loser_gets_already_locked(ledger, conn):
    # The existence check passed but the unique index rejected the insert
    conn.fetchrow.return_value = {'id': CARD_ID, 'status': IN_VAULT}
    conn.fetchval.side_effect = [None, UniqueViolationError('duplicate key value')]

    with pytest.raises(AlreadyLockedError):
        await ledger.lock(CARD_ID, ORDER_ID)

    conn.execute.assert_not_called()
    assert conn.rollbacks == 1

@pytest.mark.asyncio
async def test_lock_storage_failure(ledger, conn):
    conn.fetchrow.return_value = {'id': CARD_ID, 'status': IN_VAULT}
    conn.fetchval.side_effect = [None, ESCROW_ID]
    conn.execute.side_effect = PostgresError('connection lost')

    with pytest.raises(TransactionFailureError) as exc_info:
        await ledger.lock(CARD_ID, ORDER_ID)

    assert exc_info.value.retryable is True
    assert conn.rollbacks == 1

@pytest.mark.asyncio
async def test_unlock_releases_lock(ledger, conn):
    conn.fetchrow.return_value = escrow_row(status=UNLOCKED, reason='cancelled')

    escrow = await ledger.unlock(CARD_ID, ORDER_ID, 'cancelled')

    assert escrow['status'] == UNLOCKED
    assert conn.commits == 1
    update = conn.fetchrow.call_args
    assert "status = 'locked'" in update.args[0]
    assert update.args[1:] == (CARD_ID, ORDER_ID, 'cancelled')

    clear_lock, audit = conn.execute.call_args_list
    assert 'locked_by_order_id = NULL' in clear_lock.args[0]
    assert clear_lock.args[1:] == (CARD_ID, ORDER_ID, IN_VAULT)
    assert audit.args[4] == 'unlock'

@pytest.mark.asyncio
async def test_unlock_keeps_withdrawn_card_status(ledger, conn):
    conn.fetchrow.return_value = escrow_row(status=UNLOCKED, reason='cancelled')

    await ledger.unlock(CARD_ID, ORDER_ID, 'cancelled')

    clear_lock = conn.execute.call_args_list[0]
    assert 'CASE WHEN is_active THEN $3 ELSE status END' in clear_lock.args[0]
    assert 'locked_by_order_id = NULL' in clear_lock.args[0]

@pytest.mark.asyncio
async def test_unlock_without_active_lock(ledger, conn):
    # Covers both a never-locked pair and a second unlock of the same pair
    conn.fetchrow.return_value = None

    with pytest.raises(EscrowNotFoundError) as exc_info:
        await ledger.unlock(CARD_ID, ORDER_ID, 'cancelled')

    assert isinstance(exc_info.value, NotFoundError)
    conn.execute.assert_not_called()
    assert conn.rollbacks == 1

@pytest.mark.asyncio
@pytest.mark.parametrize("reason", ['', '   '])
async def test_unlock_requires_reason(ledger, conn, reason):
    with pytest.raises(ValueError):
        await ledger.unlock(CARD_ID, ORDER_ID, reason)
    conn.fetchrow.assert_not_called()

@pytest.mark.asyncio
async def test_complete_requires_locked_escrow(ledger, conn):
    conn.fetchrow.return_value = escrow_row(status=COMPLETED)

    with pytest.raises(InvalidStateError) as exc_info:
        await ledger.complete(ORDER_ID, ESCROW_ID, conn)

    assert exc_info.value.status == COMPLETED
    assert conn.fetchrow.call_count == 1
    conn.execute.assert_not_called()

@pytest.mark.asyncio
async def test_complete_rejects_other_order(ledger, conn):
    conn.fetchrow.return_value = escrow_row(order_id=uuid.uuid4())

    with pytest.raises(EscrowNotFoundError):
        await ledger.complete(ORDER_ID, ESCROW_ID, conn)

@pytest.mark.asyncio
async def test_complete_requires_buyer(ledger, conn):
    conn.fetchrow.return_value = escrow_row(buyer_id=None)

    with pytest.raises(InvalidStateError):
        await ledger.complete(ORDER_ID, ESCROW_ID, conn)

@pytest.mark.asyncio
async def test_get_escrow_not_found(ledger, conn):
    conn.fetchrow.return_value = None
    with pytest.raises(EscrowNotFoundError):
        await ledger.get_escrow(ESCROW_ID)

@pytest.mark.asyncio
async def test_list_escrows_filters(ledger, conn):
    conn.fetch.return_value = [escrow_row()]

    escrows = await ledger.list_escrows(status=LOCKED, card_instance_id=CARD_ID, limit=10)

    assert escrows == [escrow_row()]
    query, *params = conn.fetch.call_args.args
    assert 'status = $1' in query
    assert 'card_instance_id = $2' in query
    assert 'LIMIT $3 OFFSET $4' in query
    assert params == [LOCKED, CARD_ID, 10, 0]

@pytest.mark.asyncio
async def test_list_escrows_rejects_unknown_status(ledger):
    with pytest.raises(ValueError):
        await ledger.list_escrows(status='pending')
