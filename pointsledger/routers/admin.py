from fastapi import APIRouter, Depends, Query

from pointsledger.deps import require_admin
from pointsledger.services import expiry as expiry_service

router = APIRouter()


@router.post("/sweeps/expire-posts")
async def admin_expire_posts(admin_id: str = Depends(require_admin)):
    """Admin: run the post expiry sweep now."""
    result = await expiry_service.expire_posts()
    return result.model_dump()


@router.get("/sweeps")
async def admin_recent_sweeps(admin_id: str = Depends(require_admin), limit: int = Query(10, ge=1, le=100)):
    """Admin: audit entries of recent sweep runs."""
    logs = await expiry_service.recent_sweeps(limit=limit)
    return {
        "sweeps": [
            {
                "event_type": entry.event_type,
                "metadata": entry.metadata,
                "created_at": entry.created_at.isoformat(),
            }
            for entry in logs
        ]
    }
