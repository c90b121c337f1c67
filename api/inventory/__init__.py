"""Card instance read endpoints."""

from typing import Any, Dict
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status

from inventory import CardInstanceManager, CardInstanceNotFoundError

# Create router
router = APIRouter(
    prefix="/inventory",
    tags=["Inventory"]
)

def get_instance_manager() -> CardInstanceManager:
    return CardInstanceManager()

@router.get("/instances/{instance_id}")
async def get_instance(
    instance_id: UUID,
    manager: CardInstanceManager = Depends(get_instance_manager)
) -> Dict[str, Any]:
    """Get a card instance by ID."""
    try:
        return await manager.get_instance(instance_id)
    except CardInstanceNotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(e)
        )

@router.get("/owners/{user_id}/instances")
async def list_owner_instances(
    user_id: UUID,
    manager: CardInstanceManager = Depends(get_instance_manager)
) -> Dict[str, Any]:
    """List a user's active card instances."""
    instances = await manager.list_active_for_owner(user_id)
    return {'instances': instances, 'count': len(instances)}

@router.get("/stats")
async def get_inventory_stats(
    manager: CardInstanceManager = Depends(get_instance_manager)
) -> Dict[str, Any]:
    """Get inventory counts (total, active, locked, by status)."""
    return await manager.get_stats()
