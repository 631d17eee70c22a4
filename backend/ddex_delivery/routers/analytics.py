from datetime import datetime
from typing import Optional
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ddex_delivery.core.clock import to_jst_naive
from ddex_delivery.core.database import get_db
from ddex_delivery.routers.deps import require_api_key
from ddex_delivery.services.analytics_service import get_delivery_analytics

router = APIRouter(prefix="/api/analytics", tags=["analytics"])


@router.get("/deliveries")
async def delivery_analytics(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    tenant_id: Optional[str] = None,
    db: Session = Depends(get_db),
    _=Depends(require_api_key),
):
    """配信集計"""
    return get_delivery_analytics(db, to_jst_naive(start), to_jst_naive(end), tenant_id)
