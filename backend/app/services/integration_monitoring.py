from __future__ import annotations

from collections import Counter, defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.models_sqlalchemy.models import IntegrationAlert, IntegrationLog, IntegrationLogStatus
from app.services.integration_log import _get_session
from app.utils.logger import logger


ERROR_RATE_THRESHOLD = 0.1
CRITICAL_ERROR_RATE = 0.25
RESPONSE_TIME_THRESHOLD_MS = 5000
SUCCESS_RATE_THRESHOLD = 0.95
INACTIVITY_HOURS = 6

ALERT_WINDOW = timedelta(hours=1)
ALERT_MIN_OPERATIONS = 5
CONSECUTIVE_FAILURE_LIMIT = 5
ALERT_SUPPRESSION = timedelta(minutes=15)

_SUCCESS = IntegrationLogStatus.SUCCESS.value
_FAILURE = IntegrationLogStatus.FAILURE.value
_WARNING = IntegrationLogStatus.WARNING.value


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive values; everything is stored in UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    value = _as_utc(value)
    return value.isoformat() if value else None


def _log_query(session: Session, integration_type: str, since: Optional[datetime], store_id: Optional[str]):
    query = session.query(IntegrationLog).filter(IntegrationLog.integration_type == integration_type)
    if since is not None:
        query = query.filter(IntegrationLog.created_at >= since)
    if store_id:
        query = query.filter(IntegrationLog.store_id == store_id)
    return query


def _rate(part: int, total: int) -> float:
    return part / total if total else 0.0


# ---------------------------------------------------------------------------
# Metrics and health
# ---------------------------------------------------------------------------


def get_integration_metrics(
    integration_type: str = "shipstation",
    hours: int = 24,
    store_id: Optional[str] = None,
    *,
    db: Optional[Session] = None,
) -> Dict[str, Any]:
    """Aggregate integration_logs over the last ``hours``.

    Rates are 0 when there is no activity. ``operations_by_hour`` holds at
    most 24 buckets, newest first.
    """
    since = _now_utc() - timedelta(hours=hours)
    session, owns_session = _get_session(db)
    try:
        rows: Sequence[IntegrationLog] = (
            _log_query(session, integration_type, since, store_id).order_by(IntegrationLog.created_at.desc()).all()
        )
    finally:
        if owns_session:
            session.close()

    statuses = Counter(row.status for row in rows)
    total = len(rows)
    timings = [row.execution_time_ms for row in rows if row.execution_time_ms is not None]

    by_hour: Dict[datetime, Counter] = defaultdict(Counter)
    for row in rows:
        bucket = _as_utc(row.created_at).replace(minute=0, second=0, microsecond=0)
        by_hour[bucket]["total"] += 1
        by_hour[bucket][row.status] += 1

    return {
        "total_operations": total,
        "successful_operations": statuses[_SUCCESS],
        "failed_operations": statuses[_FAILURE],
        "warning_operations": statuses[_WARNING],
        "success_rate": _rate(statuses[_SUCCESS], total),
        "error_rate": _rate(statuses[_FAILURE], total),
        "avg_execution_time": sum(timings) / len(timings) if timings else 0,
        "max_execution_time": max(timings) if timings else 0,
        "min_execution_time": min(timings) if timings else 0,
        "operations_by_type": dict(Counter(row.operation for row in rows).most_common()),
        "operations_by_hour": [
            {
                "hour": hour.isoformat(),
                "total": counts["total"],
                "success": counts[_SUCCESS],
                "failure": counts[_FAILURE],
                "warning": counts[_WARNING],
            }
            for hour, counts in sorted(by_hour.items(), reverse=True)[:24]
        ],
        "recent_errors": [
            {
                "id": row.id,
                "operation": row.operation,
                "error_message": row.error_message,
                "created_at": _iso(row.created_at),
                "execution_time_ms": row.execution_time_ms,
            }
            for row in rows
            if row.status == _FAILURE
        ][:10],
    }


def get_integration_health(
    integration_type: str = "shipstation",
    store_id: Optional[str] = None,
    *,
    db: Optional[Session] = None,
) -> Dict[str, Any]:
    """Classify the last 24 hours as healthy, warning or critical."""
    session, owns_session = _get_session(db)
    try:
        metrics = get_integration_metrics(integration_type, 24, store_id, db=session)
        issues: List[str] = []
        recommendations: List[str] = []
        status = "healthy"

        if metrics["error_rate"] > ERROR_RATE_THRESHOLD:
            issues.append(f"High error rate: {metrics['error_rate'] * 100:.1f}%")
            status = "critical" if metrics["error_rate"] > CRITICAL_ERROR_RATE else "warning"
            recommendations.append("Investigate recent errors and fix underlying issues")

        if metrics["avg_execution_time"] > RESPONSE_TIME_THRESHOLD_MS:
            issues.append(f"Slow response time: {metrics['avg_execution_time']:.0f}ms")
            if status != "critical":
                status = "warning"
            recommendations.append("Review integration performance and optimize API calls")

        if metrics["total_operations"] and metrics["success_rate"] < SUCCESS_RATE_THRESHOLD:
            issues.append(f"Low success rate: {metrics['success_rate'] * 100:.1f}%")
            status = "critical"
            recommendations.append("Immediate attention required - multiple operations failing")

        recent_since = _now_utc() - timedelta(hours=INACTIVITY_HOURS)
        recent_activity = _log_query(session, integration_type, recent_since, store_id).with_entities(
            func.max(IntegrationLog.created_at)
        ).scalar()
        if recent_activity is None:
            issues.append("No recent integration activity detected")
            if status == "healthy":
                status = "warning"
            recommendations.append("Verify integration is active and configured correctly")

        def last_with(status_value: str) -> Optional[str]:
            value = (
                _log_query(session, integration_type, None, store_id)
                .filter(IntegrationLog.status == status_value)
                .with_entities(func.max(IntegrationLog.created_at))
                .scalar()
            )
            return _iso(value)

        return {
            "status": status,
            "issues": issues,
            "metrics": {
                "success_rate_24h": metrics["success_rate"],
                "error_rate_24h": metrics["error_rate"],
                "avg_response_time_24h": metrics["avg_execution_time"],
                "failed_operations_24h": metrics["failed_operations"],
                "last_successful_operation": last_with(_SUCCESS),
                "last_failed_operation": last_with(_FAILURE),
            },
            "recommendations": recommendations,
        }
    except SQLAlchemyError:
        logger.exception("Failed to compute integration health for %s (store=%s)", integration_type, store_id)
        return {
            "status": "critical",
            "issues": ["Unable to retrieve health status"],
            "metrics": {
                "success_rate_24h": 0.0,
                "error_rate_24h": 1.0,
                "avg_response_time_24h": 0,
                "failed_operations_24h": 0,
                "last_successful_operation": None,
                "last_failed_operation": None,
            },
            "recommendations": ["Check database connectivity and service health"],
        }
    finally:
        if owns_session:
            session.close()


def _slope(values: List[float]) -> float:
    n = len(values)
    sum_x = n * (n - 1) / 2
    sum_xx = sum(i * i for i in range(n))
    sum_y = sum(values)
    sum_xy = sum(i * y for i, y in enumerate(values))
    denominator = n * sum_xx - sum_x * sum_x
    return (n * sum_xy - sum_x * sum_y) / denominator if denominator else 0.0


def _trends(daily: List[Dict[str, Any]]) -> Dict[str, str]:
    if len(daily) < 3:
        return {"success_rate_trend": "stable", "response_time_trend": "stable", "volume_trend": "stable"}

    success = _slope([d["success_rate"] for d in daily])
    response = _slope([d["avg_execution_time"] for d in daily])
    volume = _slope([d["total_operations"] for d in daily])
    return {
        "success_rate_trend": "improving" if success > 0.01 else "declining" if success < -0.01 else "stable",
        # Lower response time is the improvement.
        "response_time_trend": "improving" if response < -100 else "declining" if response > 100 else "stable",
        "volume_trend": "increasing" if volume > 1 else "decreasing" if volume < -1 else "stable",
    }


def get_performance_trends(
    integration_type: str = "shipstation",
    days: int = 7,
    store_id: Optional[str] = None,
    *,
    db: Optional[Session] = None,
) -> Dict[str, Any]:
    """Daily stats in chronological order plus slope-based trend labels."""
    since = _now_utc() - timedelta(days=days)
    session, owns_session = _get_session(db)
    try:
        rows = _log_query(session, integration_type, since, store_id).all()
    finally:
        if owns_session:
            session.close()

    per_day: Dict[str, List[IntegrationLog]] = defaultdict(list)
    for row in rows:
        per_day[_as_utc(row.created_at).date().isoformat()].append(row)

    daily: List[Dict[str, Any]] = []
    for day in sorted(per_day):
        day_rows = per_day[day]
        timings = [r.execution_time_ms for r in day_rows if r.execution_time_ms is not None]
        daily.append(
            {
                "date": day,
                "total_operations": len(day_rows),
                "success_rate": _rate(sum(1 for r in day_rows if r.status == _SUCCESS), len(day_rows)),
                "avg_execution_time": sum(timings) / len(timings) if timings else 0,
                "error_count": sum(1 for r in day_rows if r.status == _FAILURE),
            }
        )
    return {"daily_stats": daily, "trends": _trends(daily)}


# ---------------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------------


def alert_to_dict(alert: IntegrationAlert) -> Dict[str, Any]:
    return {
        "id": alert.id,
        "store_id": alert.store_id,
        "integration_type": alert.integration_type,
        "operation": alert.operation,
        "level": alert.level,
        "type": alert.alert_type,
        "message": alert.message,
        "metadata": alert.details or {},
        "created_at": _iso(alert.created_at),
    }


def _recently_alerted(
    session: Session, store_id: Optional[str], integration_type: str, operation: str, alert_type: str
) -> bool:
    since = _now_utc() - ALERT_SUPPRESSION
    query = (
        session.query(IntegrationAlert.id)
        .filter(IntegrationAlert.integration_type == integration_type)
        .filter(IntegrationAlert.operation == operation)
        .filter(IntegrationAlert.alert_type == alert_type)
        .filter(IntegrationAlert.created_at >= since)
    )
    if store_id is None:
        query = query.filter(IntegrationAlert.store_id.is_(None))
    else:
        query = query.filter(IntegrationAlert.store_id == store_id)
    return query.first() is not None


def _raise_alert(
    session: Session,
    *,
    store_id: Optional[str],
    integration_type: str,
    operation: str,
    level: str,
    alert_type: str,
    message: str,
    details: Dict[str, Any],
) -> Optional[IntegrationAlert]:
    if _recently_alerted(session, store_id, integration_type, operation, alert_type):
        logger.debug("Suppressing repeated %s alert for %s/%s", alert_type, store_id, operation)
        return None

    if level == "critical":
        logger.error("ALERT [%s] store=%s: %s", level.upper(), store_id, message)
    else:
        logger.warning("ALERT [%s] store=%s: %s", level.upper(), store_id, message)

    alert = IntegrationAlert(
        store_id=store_id,
        integration_type=integration_type,
        operation=operation,
        level=level,
        alert_type=alert_type,
        message=message,
        details=details,
    )
    session.add(alert)
    session.flush()
    return alert


def check_alert_conditions(
    store_id: Optional[str],
    integration_type: str,
    operation: str,
    db: Session,
) -> List[IntegrationAlert]:
    """Raise alerts after a failure was logged.

    Runs inside the caller's transaction. Two rules, each suppressed for
    fifteen minutes per store, operation and type: an error rate above 10%
    over at least five operations in the last hour (warning), and five or
    more failures in a row for one operation (critical).
    """
    since = _now_utc() - ALERT_WINDOW
    raised: List[IntegrationAlert] = []
    try:
        window = db.query(IntegrationLog.status).filter(
            IntegrationLog.integration_type == integration_type,
            IntegrationLog.created_at >= since,
        )
        if store_id is None:
            window = window.filter(IntegrationLog.store_id.is_(None))
        else:
            window = window.filter(IntegrationLog.store_id == store_id)

        statuses = [status for (status,) in window.all()]
        total = len(statuses)
        failures = statuses.count(_FAILURE)
        error_rate = _rate(failures, total)
        if total >= ALERT_MIN_OPERATIONS and error_rate > ERROR_RATE_THRESHOLD:
            alert = _raise_alert(
                db,
                store_id=store_id,
                integration_type=integration_type,
                operation=operation,
                level="warning",
                alert_type="high_error_rate",
                message=(
                    f"High error rate detected: {error_rate * 100:.1f}% ({failures}/{total}) in the last hour"
                ),
                details={
                    "error_rate": error_rate,
                    "total_operations": total,
                    "failed_operations": failures,
                    "time_window": "1 hour",
                },
            )
            if alert is not None:
                raised.append(alert)

        latest = (
            window.filter(IntegrationLog.operation == operation)
            .order_by(IntegrationLog.created_at.desc())
            .limit(10)
            .all()
        )
        streak = 0
        for (status,) in latest:
            if status != _FAILURE:
                break
            streak += 1
        if streak >= CONSECUTIVE_FAILURE_LIMIT:
            alert = _raise_alert(
                db,
                store_id=store_id,
                integration_type=integration_type,
                operation=operation,
                level="critical",
                alert_type="consecutive_failures",
                message=f"{streak} consecutive failures detected for {operation}",
                details={"consecutive_failures": streak, "operation": operation},
            )
            if alert is not None:
                raised.append(alert)
    except SQLAlchemyError:
        logger.error(
            "Alert evaluation failed for store=%s operation=%s", store_id, operation, exc_info=True
        )
    return raised


def get_recent_alerts(
    store_id: Optional[str] = None,
    hours: int = 24,
    level: Optional[str] = None,
    limit: int = 100,
    *,
    db: Optional[Session] = None,
) -> List[Dict[str, Any]]:
    since = _now_utc() - timedelta(hours=hours)
    session, owns_session = _get_session(db)
    try:
        query = session.query(IntegrationAlert).filter(IntegrationAlert.created_at >= since)
        if store_id:
            query = query.filter(IntegrationAlert.store_id == store_id)
        if level:
            query = query.filter(IntegrationAlert.level == level)
        alerts = query.order_by(IntegrationAlert.created_at.desc()).limit(limit).all()
        return [alert_to_dict(alert) for alert in alerts]
    finally:
        if owns_session:
            session.close()
