"""Inventory escrow action endpoint.

A single POST endpoint dispatches on the ``action`` field of the request body:
lock, unlock, determine_lane, complete_sale, integrity_check and
repair_inventory. Callers are authenticated upstream and identify themselves
with the X-Actor-Id and X-Actor-Role headers.
"""

import logging
from decimal import Decimal
from typing import Annotated, Any, Dict, Literal, Optional, Union
from uuid import UUID

from fastapi import APIRouter, Body, Depends, Header, Query, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from escrow import (
    EscrowLedger,
    LaneDecisionEngine,
    SaleCompletionOrchestrator,
    IntegrityAuditor,
    InventoryError,
    NotFoundError,
    AlreadyLockedError,
    InvalidStateError,
    TransactionFailureError
)

logger = logging.getLogger(__name__)

# Create router
router = APIRouter(
    prefix="/inventory-escrow",
    tags=["Inventory Escrow"]
)

ADMIN_ROLE = 'admin'

ERROR_STATUS = [
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (AlreadyLockedError, status.HTTP_409_CONFLICT),
    (InvalidStateError, status.HTTP_409_CONFLICT),
    (TransactionFailureError, status.HTTP_503_SERVICE_UNAVAILABLE),
]

class LockRequest(BaseModel):
    """Lock a card instance for an order."""
    action: Literal['lock']
    card_instance_id: UUID
    order_id: UUID
    seller_id: Optional[UUID] = None
    buyer_id: Optional[UUID] = None
    sale_amount: Optional[Decimal] = None

class UnlockRequest(BaseModel):
    """Release an order's lock on a card instance."""
    action: Literal['unlock']
    card_instance_id: UUID
    order_id: UUID
    reason: str = Field(..., min_length=1)

class DetermineLaneRequest(BaseModel):
    """Preview the settlement lane for a sale."""
    action: Literal['determine_lane']
    seller_id: UUID
    card_value: Decimal
    card_instance_id: Optional[UUID] = None

class CompleteSaleRequest(BaseModel):
    """Finalize a sale held in escrow."""
    action: Literal['complete_sale']
    order_id: UUID
    escrow_id: UUID
    buyer_id: Optional[UUID] = None

class IntegrityCheckRequest(BaseModel):
    """Run an integrity check."""
    action: Literal['integrity_check']

class RepairRequest(BaseModel):
    """Operator repair of inventory drift."""
    action: Literal['repair_inventory']
    repair_type: Literal['unlock_orphans', 'fix_status']
    card_instance_id: Optional[UUID] = None

EscrowRequest = Union[
    LockRequest,
    UnlockRequest,
    DetermineLaneRequest,
    CompleteSaleRequest,
    IntegrityCheckRequest,
    RepairRequest
]

def get_ledger() -> EscrowLedger:
    return EscrowLedger()

def get_lane_engine() -> LaneDecisionEngine:
    return LaneDecisionEngine()

def get_orchestrator() -> SaleCompletionOrchestrator:
    return SaleCompletionOrchestrator()

def get_auditor() -> IntegrityAuditor:
    return IntegrityAuditor()

def error_response(error: Exception) -> JSONResponse:
    """Translate an error into the action endpoint's failure body."""
    if isinstance(error, InventoryError):
        status_code = next(
            (code for error_type, code in ERROR_STATUS if isinstance(error, error_type)),
            status.HTTP_400_BAD_REQUEST
        )
        body = {'success': False, 'error': str(error), 'code': error.code}
        if error.retryable:
            body['retryable'] = True
        return JSONResponse(status_code=status_code, content=body)

    if isinstance(error, ValueError):
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={'success': False, 'error': str(error), 'code': 'invalid_request'}
        )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={'success': False, 'error': str(error), 'code': 'internal_error'}
    )

@router.post("")
async def inventory_escrow(
    body: Annotated[EscrowRequest, Body(discriminator='action')],
    x_actor_id: Optional[UUID] = Header(None),
    x_actor_role: Optional[str] = Header(None),
    ledger: EscrowLedger = Depends(get_ledger),
    lane_engine: LaneDecisionEngine = Depends(get_lane_engine),
    orchestrator: SaleCompletionOrchestrator = Depends(get_orchestrator),
    auditor: IntegrityAuditor = Depends(get_auditor)
):
    """Run one inventory escrow action."""
    try:
        if isinstance(body, LockRequest):
            lane_decision = None
            if body.seller_id is not None and body.sale_amount is not None:
                lane_decision = await lane_engine.determine_lane(
                    body.seller_id, body.sale_amount, body.card_instance_id
                )
            lock_id = await ledger.lock(
                body.card_instance_id,
                body.order_id,
                seller_id=body.seller_id,
                buyer_id=body.buyer_id,
                sale_amount=body.sale_amount,
                lane_decision=lane_decision,
                actor_user_id=x_actor_id
            )
            result: Dict[str, Any] = {'success': True, 'lock_id': lock_id}
            if lane_decision is not None:
                result['lane'] = lane_decision.lane
                result['requires_verification'] = lane_decision.requires_verification
            return result

        if isinstance(body, UnlockRequest):
            await ledger.unlock(
                body.card_instance_id,
                body.order_id,
                body.reason,
                actor_user_id=x_actor_id
            )
            return {'success': True}

        if isinstance(body, DetermineLaneRequest):
            decision = await lane_engine.determine_lane(
                body.seller_id, body.card_value, body.card_instance_id
            )
            return {'success': True, **decision.to_dict()}

        if isinstance(body, CompleteSaleRequest):
            escrow = await orchestrator.complete_sale(
                body.order_id,
                body.escrow_id,
                buyer_id=body.buyer_id,
                actor_user_id=x_actor_id
            )
            return {
                'success': True,
                'escrow_id': escrow['id'],
                'card_instance_id': escrow['card_instance_id'],
                'buyer_id': escrow['buyer_id']
            }

        if isinstance(body, IntegrityCheckRequest):
            report = await auditor.run_integrity_check()
            return {'success': True, **report.to_dict()}

        if x_actor_role != ADMIN_ROLE:
            return JSONResponse(
                status_code=status.HTTP_403_FORBIDDEN,
                content={'success': False, 'error': 'Admin access required', 'code': 'forbidden'}
            )
        repair_result = await auditor.repair(
            body.repair_type,
            card_instance_id=body.card_instance_id,
            actor_user_id=x_actor_id
        )
        return {'success': True, 'result': repair_result}

    except (InventoryError, ValueError) as e:
        return error_response(e)
    except Exception as e:
        logger.error(f"Inventory escrow error ({body.action}): {e}")
        return error_response(e)

@router.get("/escrows")
async def list_escrows(
    escrow_status: Optional[str] = Query(None, alias="status"),
    card_instance_id: Optional[UUID] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    ledger: EscrowLedger = Depends(get_ledger)
):
    """List escrow entries, newest first."""
    try:
        escrows = await ledger.list_escrows(
            status=escrow_status,
            card_instance_id=card_instance_id,
            limit=limit,
            offset=offset
        )
        return {'escrows': escrows, 'count': len(escrows)}
    except ValueError as e:
        return error_response(e)

@router.get("/escrows/{escrow_id}")
async def get_escrow(escrow_id: UUID, ledger: EscrowLedger = Depends(get_ledger)):
    """Get a single escrow entry."""
    try:
        return await ledger.get_escrow(escrow_id)
    except NotFoundError as e:
        return error_response(e)

@router.get("/issues")
async def list_integrity_issues(
    limit: int = Query(100, ge=1, le=1000),
    auditor: IntegrityAuditor = Depends(get_auditor)
):
    """List recorded integrity issues that have not been resolved."""
    issues = await auditor.list_unresolved_issues(limit=limit)
    return {'issues': issues, 'count': len(issues)}
