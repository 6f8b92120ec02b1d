from datetime import datetime, timedelta, timezone

import pytest

from app.models_sqlalchemy.models import IntegrationAlert, IntegrationLog
from app.services.integration_log import log_integration
from app.services.integration_monitoring import (
    get_integration_health,
    get_integration_metrics,
    get_performance_trends,
    get_recent_alerts,
)

from conftest import STORE_ID


def seed(db, status="success", *, operation="order_create", hours_ago=0.0, store_id=STORE_ID,
         integration_type="shipstation", elapsed=None, error=None):
    db.add(
        IntegrationLog(
            store_id=store_id,
            integration_type=integration_type,
            operation=operation,
            status=status,
            execution_time_ms=elapsed,
            error_message=error,
            created_at=datetime.now(timezone.utc) - timedelta(hours=hours_ago),
        )
    )


def test_metrics_cover_window_store_and_integration(db):
    seed(db, elapsed=100)
    seed(db, elapsed=200, operation="credential_test")
    seed(db, elapsed=300)
    seed(db, "failure", elapsed=900, error="HTTP 500")
    seed(db, "warning")
    seed(db, hours_ago=48, elapsed=5)
    seed(db, store_id="store-2", elapsed=5)
    seed(db, integration_type="shipengine", elapsed=5)
    db.commit()

    metrics = get_integration_metrics("shipstation", 24, STORE_ID)

    assert metrics["total_operations"] == 5
    assert metrics["successful_operations"] == 3
    assert metrics["failed_operations"] == 1
    assert metrics["warning_operations"] == 1
    assert metrics["success_rate"] == pytest.approx(0.6)
    assert metrics["error_rate"] == pytest.approx(0.2)
    assert metrics["avg_execution_time"] == pytest.approx(375)
    assert (metrics["min_execution_time"], metrics["max_execution_time"]) == (100, 900)
    assert metrics["operations_by_type"] == {"order_create": 4, "credential_test": 1}
    assert sum(bucket["total"] for bucket in metrics["operations_by_hour"]) == 5
    (error,) = metrics["recent_errors"]
    assert error["error_message"] == "HTTP 500"
    assert error["execution_time_ms"] == 900

    assert get_integration_metrics("shipstation", 24)["total_operations"] == 6
    assert get_integration_metrics("shipstation", 72, STORE_ID)["total_operations"] == 6


def test_metrics_without_activity_are_zero(db):
    metrics = get_integration_metrics()

    assert metrics["total_operations"] == 0
    assert metrics["success_rate"] == 0
    assert metrics["error_rate"] == 0
    assert metrics["avg_execution_time"] == 0
    assert metrics["operations_by_hour"] == []
    assert metrics["recent_errors"] == []


def test_busy_successful_integration_is_healthy(db):
    for _ in range(20):
        seed(db, elapsed=120)
    db.commit()

    health = get_integration_health(store_id=STORE_ID)

    assert health["status"] == "healthy"
    assert health["issues"] == []
    assert health["metrics"]["last_successful_operation"] is not None
    assert health["metrics"]["last_failed_operation"] is None


def test_high_error_rate_is_critical(db):
    for _ in range(3):
        seed(db)
    for _ in range(2):
        seed(db, "failure", error="timeout")
    db.commit()

    health = get_integration_health(store_id=STORE_ID)

    assert health["status"] == "critical"
    assert any(issue.startswith("High error rate: 40.0%") for issue in health["issues"])
    assert health["metrics"]["failed_operations_24h"] == 2


def test_slow_responses_are_a_warning(db):
    for _ in range(10):
        seed(db, elapsed=6000)
    db.commit()

    health = get_integration_health(store_id=STORE_ID)

    assert health["status"] == "warning"
    assert health["issues"] == ["Slow response time: 6000ms"]


def test_quiet_integration_warns_without_a_success_rate_verdict(db):
    health = get_integration_health(store_id=STORE_ID)

    assert health["status"] == "warning"
    assert health["issues"] == ["No recent integration activity detected"]

    seed(db, hours_ago=10)
    db.commit()
    assert get_integration_health(store_id=STORE_ID)["status"] == "warning"


def test_inactivity_does_not_soften_a_critical_status(db):
    seed(db, hours_ago=8)
    seed(db, "failure", hours_ago=8)
    db.commit()

    health = get_integration_health(store_id=STORE_ID)

    assert health["status"] == "critical"
    assert "No recent integration activity detected" in health["issues"]


def _fail(times, operation="order_create"):
    for _ in range(times):
        log_integration(operation=operation, status="failure", store_id=STORE_ID, error_message="HTTP 503")


def test_repeated_failures_raise_warning_and_critical_alerts(db):
    _fail(6)

    alerts = get_recent_alerts(STORE_ID)

    assert sorted(alert["type"] for alert in alerts) == ["consecutive_failures", "high_error_rate"]
    (critical,) = get_recent_alerts(STORE_ID, level="critical")
    assert critical["message"] == "5 consecutive failures detected for order_create"
    assert critical["metadata"] == {"consecutive_failures": 5, "operation": "order_create"}
    assert get_recent_alerts("store-2") == []


def test_a_success_resets_the_failure_streak(db):
    _fail(4)
    log_integration(operation="order_create", status="success", store_id=STORE_ID)
    _fail(1)

    assert [alert["type"] for alert in get_recent_alerts(STORE_ID)] == ["high_error_rate"]


def test_alerts_repeat_once_the_quiet_period_has_passed(db):
    _fail(5)
    db.query(IntegrationAlert).update(
        {IntegrationAlert.created_at: datetime.now(timezone.utc) - timedelta(minutes=20)}
    )
    db.commit()

    _fail(1)

    db.expire_all()
    streak_alerts = db.query(IntegrationAlert).filter(IntegrationAlert.alert_type == "consecutive_failures").all()
    assert len(streak_alerts) == 2


def test_failure_logged_in_callers_transaction_rolls_back_with_its_alerts(db):
    for _ in range(5):
        log_integration(operation="order_create", status="failure", store_id=STORE_ID, db=db)
    assert db.query(IntegrationAlert).count() == 2

    db.rollback()

    assert db.query(IntegrationAlert).count() == 0
    assert db.query(IntegrationLog).count() == 0


def test_trends_report_daily_stats_in_order(db):
    for days_ago, volume in ((3, 1), (2, 3), (1, 5), (0, 7)):
        for _ in range(volume):
            seed(db, hours_ago=days_ago * 24 + 0.1, elapsed=100)
    db.commit()

    trends = get_performance_trends(days=5, store_id=STORE_ID)

    volumes = [day["total_operations"] for day in trends["daily_stats"]]
    assert volumes == [1, 3, 5, 7]
    assert trends["trends"] == {
        "success_rate_trend": "stable",
        "response_time_trend": "stable",
        "volume_trend": "increasing",
    }


def test_trends_need_three_days_of_data(db):
    seed(db)
    db.commit()

    assert get_performance_trends()["trends"]["volume_trend"] == "stable"
