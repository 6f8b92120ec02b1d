from __future__ import annotations

from typing import Any, Dict, Optional, Tuple

from sqlalchemy.orm import Session

from app.models_sqlalchemy import SessionLocal
from app.models_sqlalchemy.models import IntegrationLog
from app.utils.logger import logger, mask_credentials


def _get_session(db: Optional[Session] = None) -> Tuple[Session, bool]:
    """Return a session and a flag indicating ownership."""

    if db is not None:
        return db, False
    return SessionLocal(), True


def log_integration(
    *,
    operation: str,
    status: str,
    store_id: Optional[str] = None,
    integration_type: str = "shipstation",
    request_data: Optional[Dict[str, Any]] = None,
    response_data: Optional[Dict[str, Any]] = None,
    error_message: Optional[str] = None,
    execution_time_ms: Optional[int] = None,
    db: Optional[Session] = None,
) -> IntegrationLog:
    """Insert one write-once row into integration_logs.

    Request and response documents are masked before storage. When ``db`` is
    omitted a short-lived session is used and committed; otherwise the row is
    only flushed and the caller owns the transaction. Failures are checked
    against the alert rules in the same transaction.
    """

    session, owns_session = _get_session(db)
    try:
        row = IntegrationLog(
            store_id=store_id,
            integration_type=integration_type,
            operation=operation,
            status=status,
            request_data=mask_credentials(request_data) if request_data else None,
            response_data=mask_credentials(response_data) if response_data else None,
            error_message=error_message,
            execution_time_ms=execution_time_ms,
        )
        session.add(row)
        if status == "failure":
            from app.services.integration_monitoring import check_alert_conditions

            session.flush()
            check_alert_conditions(store_id, integration_type, operation, session)
        if owns_session:
            session.commit()
            session.refresh(row)
        else:
            session.flush()
        return row
    except Exception:
        logger.error(
            "Failed to write integration log (operation=%s, status=%s)", operation, status, exc_info=True
        )
        if owns_session:
            session.rollback()
        raise
    finally:
        if owns_session:
            session.close()

