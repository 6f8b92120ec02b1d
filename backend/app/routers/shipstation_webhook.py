from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.config import settings
from app.models_sqlalchemy import get_db
from app.models_sqlalchemy.models import JobPriority, JobType
from app.services.job_queue import enqueue_job
from app.services.order_status_service import apply_webhook_payload, is_known_resource_type
from app.services.shipstation.auth import authenticate_multi, log_auth_attempt, verify_webhook_signature
from app.services.shipstation.credentials import get_store_credentials
from app.services.shipstation.payloads import InvalidWebhookPayloadError
from app.utils.crypto import CredentialDecryptError
from app.utils.logger import logger, mask_headers


router = APIRouter(prefix="/api/shipstation", tags=["shipstation_webhooks"])

SIGNATURE_HEADER = "x-shipstation-signature"


def _rejected(status_code: int = 200, error: str = "Invalid webhook payload") -> JSONResponse:
    return JSONResponse({"success": False, "error": error}, status_code=status_code)


async def _read_payload(request: Request, raw_body: bytes) -> Optional[Dict[str, Any]]:
    """JSON body, or a form post carrying the JSON document in ``payload``."""
    content_type = request.headers.get("content-type", "").lower()
    text: Optional[str]
    if "application/x-www-form-urlencoded" in content_type or "multipart/form-data" in content_type:
        form = await request.form()
        value = form.get("payload")
        text = value if isinstance(value, str) else None
    else:
        text = raw_body.decode("utf-8", errors="replace") if raw_body else None

    if not text:
        return None
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        return None
    return payload if isinstance(payload, dict) else None


def _signature_ok(request: Request, raw_body: bytes, store_id: Optional[str], db: Session) -> bool:
    signature = request.headers.get(SIGNATURE_HEADER)
    if not signature:
        return True
    if not store_id:
        logger.warning("Webhook carries a signature but no store was resolved; signature not checked")
        return True
    try:
        credentials = get_store_credentials(store_id, db=db)
    except CredentialDecryptError:
        return False
    if credentials is None or not credentials.api_secret:
        return False
    return verify_webhook_signature(raw_body, signature, credentials.api_secret)


@router.post("/webhook")
async def shipstation_webhook(request: Request, db: Session = Depends(get_db)) -> JSONResponse:
    """Carrier push endpoint for ship/delivered notifications.

    Malformed bodies get a 200 so the carrier does not keep redelivering
    them. Processing failures are queued for retry and answered with 500.
    """
    raw_body = await request.body()
    logger.info("Carrier webhook received headers=%s", mask_headers(dict(request.headers)))

    store_id: Optional[str] = None
    auth = authenticate_multi(request.headers, db=db)
    if settings.SHIPSTATION_WEBHOOK_AUTH_REQUIRED:
        log_auth_attempt(
            headers=request.headers,
            method="POST /api/shipstation/webhook",
            result=auth,
            client_host=request.client.host if request.client else None,
            db=db,
        )
        db.commit()
        if not auth.success:
            return _rejected(401, "Authentication failed")
    if auth.success:
        store_id = auth.store_id

    if not _signature_ok(request, raw_body, store_id, db):
        logger.warning("Webhook signature verification failed for store %s", store_id)
        return _rejected(401, "Invalid signature")

    payload = await _read_payload(request, raw_body)
    if payload is None or not payload.get("resource_type") or not payload.get("resource_url"):
        logger.warning("Rejected carrier webhook: missing resource_type or resource_url")
        return _rejected()

    resource_type = str(payload["resource_type"])
    if not is_known_resource_type(resource_type):
        logger.info("Carrier webhook with unhandled resource type %s", resource_type)

    try:
        outcome = apply_webhook_payload(payload, store_id=store_id)
    except InvalidWebhookPayloadError as exc:
        logger.warning("Rejected carrier webhook: %s", exc)
        return _rejected()
    except Exception as exc:
        logger.error("Carrier webhook processing failed, queueing retry: %s", exc)
        try:
            enqueue_job(
                JobType.SHIPMENT_PROCESSING.value,
                {
                    "webhook_payload": payload,
                    "webhook_type": "shipstation_webhook",
                    "store_id": store_id,
                    "resource_type": resource_type,
                    "retry_reason": str(exc),
                },
                priority=JobPriority.URGENT.value,
            )
        except Exception:
            logger.error("Could not queue webhook retry for %s", resource_type, exc_info=True)
        return _rejected(500, "Webhook processing failed")

    return JSONResponse(
        {
            "success": True,
            "message": "Webhook processed successfully",
            "duplicate": outcome.duplicate,
            "order_id": outcome.order_id,
        }
    )


@router.get("/webhook")
async def shipstation_webhook_check(challenge: Optional[str] = Query(None)) -> Any:
    """Endpoint verification: echo ``challenge``, otherwise report health."""
    if challenge:
        return JSONResponse({"challenge": challenge})
    return {
        "status": "healthy",
        "service": "shipstation-webhook",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
