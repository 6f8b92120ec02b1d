from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.routers.admin_job_queue import admin_key_required
from app.services import integration_monitoring
from app.services.shipstation.credentials import disable_store_basic_auth, generate_store_credentials
from app.services.shipstation.gateway import get_gateway_for_store
from app.utils.crypto import CredentialDecryptError
from app.utils.logger import logger


router = APIRouter(prefix="/api/admin/integrations", tags=["admin-integrations"])


@router.get("/monitoring", dependencies=[Depends(admin_key_required)])
async def get_monitoring(
    action: str = Query("health", pattern="^(metrics|health|alerts|trends)$"),
    integration: str = Query("shipstation"),
    store_id: Optional[str] = Query(None),
    hours: int = Query(24, ge=1, le=24 * 90),
    days: int = Query(7, ge=1, le=90),
    level: Optional[str] = Query(None, pattern="^(info|warning|critical)$"),
) -> Dict[str, Any]:
    metadata: Dict[str, Any] = {
        "integration_type": integration,
        "store_id": store_id,
        "generated_at": datetime.now(timezone.utc).isoformat(),
    }
    if action == "metrics":
        data: Any = integration_monitoring.get_integration_metrics(integration, hours, store_id)
        metadata["time_range_hours"] = hours
    elif action == "alerts":
        data = integration_monitoring.get_recent_alerts(store_id, hours, level)
        metadata["time_range_hours"] = hours
    elif action == "trends":
        data = integration_monitoring.get_performance_trends(integration, days, store_id)
        metadata["time_range_days"] = days
    else:
        data = integration_monitoring.get_integration_health(integration, store_id)
    return {"success": True, "data": data, "metadata": metadata}


@router.post("/shipstation/{store_id}/credentials", dependencies=[Depends(admin_key_required)])
async def rotate_credentials(store_id: str) -> Dict[str, Any]:
    """Issue a new carrier login; the password is only shown in this response."""
    generated = generate_store_credentials(store_id)
    logger.info("Admin rotated carrier login for store %s", store_id)
    return {
        "success": True,
        "store_id": store_id,
        "username": generated.username,
        "password": generated.password,
        "previous_username": generated.previous_username,
        "was_enabled": generated.was_enabled,
    }


@router.delete("/shipstation/{store_id}/credentials", dependencies=[Depends(admin_key_required)])
async def disable_credentials(store_id: str) -> Dict[str, Any]:
    if not disable_store_basic_auth(store_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Integration not found")
    return {"success": True, "store_id": store_id}


@router.post("/shipstation/{store_id}/test", dependencies=[Depends(admin_key_required)])
async def test_store_connection(store_id: str) -> Dict[str, Any]:
    try:
        gateway = get_gateway_for_store(store_id)
    except CredentialDecryptError:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail="Stored credentials cannot be decrypted"
        )
    if gateway is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Integration not configured")

    result = await gateway.test_connection()
    if not result.success:
        logger.warning("Connection test failed for store %s: %s", store_id, result.error)
    return {
        "success": result.success,
        "store_id": store_id,
        "gateway": gateway.name,
        "status_code": result.status_code,
        "error": result.error,
    }
