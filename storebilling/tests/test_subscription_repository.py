"""Tests for the PostgreSQL repository against a scripted connection."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import psycopg2
import pytest

from storebilling.app.billing import (
    NotificationKind,
    NotificationStatus,
    PendingNotification,
    PersistenceError,
    SubscriptionStatus,
    load_billing_config,
)
from storebilling.app.billing.repository import PostgresSubscriptionRepository

UPDATED_AT = datetime(2024, 9, 15, 12, tzinfo=timezone.utc)


class _ScriptedCursor:
    def __init__(self, connection: "_ScriptedConnection") -> None:
        self._connection = connection
        self.closed = False

    def execute(self, sql: str, params: Any = None) -> None:
        if self._connection.error is not None:
            raise self._connection.error
        self._connection.statements.append((" ".join(sql.split()), params))

    def fetchone(self) -> Optional[Dict[str, Any]]:
        return self._connection.rows.pop(0) if self._connection.rows else None

    def fetchall(self) -> List[Dict[str, Any]]:
        rows, self._connection.rows = self._connection.rows, []
        return rows

    def close(self) -> None:
        self.closed = True


class _ScriptedConnection:
    def __init__(self, rows: Optional[List[Dict[str, Any]]] = None, error: Optional[Exception] = None) -> None:
        self.rows = list(rows or [])
        self.error = error
        self.statements: List[tuple] = []
        self.commits = 0
        self.rollbacks = 0
        self.closed = False

    def cursor(self, cursor_factory=None) -> _ScriptedCursor:
        return _ScriptedCursor(self)

    def commit(self) -> None:
        self.commits += 1

    def rollback(self) -> None:
        self.rollbacks += 1

    def close(self) -> None:
        self.closed = True


def _store_row(**overrides: Any) -> Dict[str, Any]:
    row = {
        "vendor_id": "vendor-1",
        "store_id": "store-1",
        "store_name": "Ada Fabrics",
        "subscription_status": "grace_period",
        "current_period_end": datetime(2024, 9, 14, tzinfo=timezone.utc),
        "grace_end": datetime(2024, 9, 19, tzinfo=timezone.utc),
        "frozen_at": None,
        "last_processed_payment_ref": "R1",
        "processed_payment_refs": ["R1"],
        "last_tick_date": None,
        "is_visible": True,
        "version": 4,
        "updated_at": UPDATED_AT,
    }
    row.update(overrides)
    return row


def test_find_by_vendor_maps_columns_and_commits():
    connection = _ScriptedConnection(rows=[_store_row()])
    repository = PostgresSubscriptionRepository(connection_factory=lambda: connection)

    record = repository.find_by_vendor("vendor-1")

    assert record.status == SubscriptionStatus.GRACE_PERIOD
    assert record.processed_payment_refs == ("R1",)
    assert record.store_visible is True
    assert record.version == 4
    assert connection.commits == 1
    assert connection.closed is True


def test_conditional_update_guards_on_version():
    connection = _ScriptedConnection(rows=[_store_row(subscription_status="active", grace_end=None, version=5)])
    repository = PostgresSubscriptionRepository(connection_factory=lambda: connection)

    updated = repository.update_subscription_fields(
        "vendor-1",
        {"status": SubscriptionStatus.ACTIVE, "grace_end": None, "processed_payment_refs": ("R1", "R2")},
        expected_version=4,
    )

    sql, params = connection.statements[0]
    assert "subscription_status = %(status)s" in sql
    assert "version = version + 1" in sql
    assert "WHERE vendor_id = %(_vendor_id)s AND version = %(_expected_version)s" in sql
    assert params["status"] == "active"
    assert params["processed_payment_refs"] == ["R1", "R2"]
    assert params["_expected_version"] == 4
    assert updated.version == 5


def test_lost_update_returns_none():
    connection = _ScriptedConnection(rows=[])
    repository = PostgresSubscriptionRepository(connection_factory=lambda: connection)

    assert repository.update_subscription_fields("vendor-1", {"store_visible": False}, expected_version=1) is None
    assert "is_visible = %(store_visible)s" in connection.statements[0][0]


def test_update_rejects_unknown_fields():
    repository = PostgresSubscriptionRepository(connection_factory=_ScriptedConnection)

    with pytest.raises(ValueError):
        repository.update_subscription_fields("vendor-1", {"store_id": "other"}, expected_version=0)


def test_claim_notification_reclaims_pending_failed_and_stale_rows():
    connection = _ScriptedConnection(rows=[{"vendor_id": "vendor-1"}])
    repository = PostgresSubscriptionRepository(connection_factory=lambda: connection, claim_ttl_seconds=600)
    notification = PendingNotification(
        vendor_id="vendor-1", kind=NotificationKind.FROZEN, period_key="2024-09-14", context={"status": "frozen"}
    )

    assert repository.claim_notification(notification) is True
    assert repository.claim_notification(notification) is False

    sql, params = connection.statements[0]
    assert "ON CONFLICT (vendor_id, kind, period_key) DO UPDATE" in sql
    assert "WHERE subscription_notifications.status = ANY(%s)" in sql
    assert "subscription_notifications.updated_at < NOW() - make_interval(secs => %s)" in sql
    assert params[:4] == ("vendor-1", "frozen", "2024-09-14", "sending")
    assert params[5:] == (["pending", "failed"], "sending", 600)


def test_update_queues_notifications_in_the_same_transaction():
    connection = _ScriptedConnection(
        rows=[_store_row(subscription_status="frozen", grace_end=None, frozen_at=UPDATED_AT, is_visible=False, version=5)]
    )
    repository = PostgresSubscriptionRepository(connection_factory=lambda: connection)
    notification = PendingNotification(vendor_id="vendor-1", kind=NotificationKind.FROZEN, period_key="2024-09-14")

    repository.update_subscription_fields(
        "vendor-1",
        {"status": SubscriptionStatus.FROZEN, "grace_end": None, "frozen_at": UPDATED_AT, "store_visible": False},
        expected_version=4,
        notifications=[notification],
    )

    assert len(connection.statements) == 2
    sql, params = connection.statements[1]
    assert sql.startswith("INSERT INTO subscription_notifications")
    assert "ON CONFLICT (vendor_id, kind, period_key) DO NOTHING" in sql
    assert params[:4] == ("vendor-1", "frozen", "2024-09-14", "pending")
    assert connection.commits == 1


def test_lost_update_queues_no_notifications():
    connection = _ScriptedConnection(rows=[])
    repository = PostgresSubscriptionRepository(connection_factory=lambda: connection)
    notification = PendingNotification(vendor_id="vendor-1", kind=NotificationKind.FROZEN, period_key="2024-09-14")

    result = repository.update_subscription_fields(
        "vendor-1", {"store_visible": False}, expected_version=1, notifications=[notification]
    )

    assert result is None
    assert len(connection.statements) == 1


def test_list_undelivered_notifications_includes_stale_claims():
    row = {
        "vendor_id": "vendor-1",
        "kind": "frozen",
        "period_key": "2024-09-14",
        "status": "pending",
        "attempts": 0,
        "context": {"status": "frozen"},
        "last_error": None,
        "created_at": UPDATED_AT,
        "updated_at": UPDATED_AT,
        "sent_at": None,
    }
    connection = _ScriptedConnection(rows=[row])
    repository = PostgresSubscriptionRepository(connection_factory=lambda: connection, claim_ttl_seconds=120)

    (record,) = repository.list_undelivered_notifications(limit=10)

    assert record.status == NotificationStatus.PENDING
    assert record.as_pending().context == {"status": "frozen"}
    sql, params = connection.statements[0]
    assert "status = ANY(%s)" in sql
    assert "updated_at < NOW() - make_interval(secs => %s)" in sql
    assert params == (["pending", "failed"], "sending", 120, 10)


def test_database_errors_surface_as_persistence_errors():
    connection = _ScriptedConnection(error=psycopg2.OperationalError("server closed the connection"))
    repository = PostgresSubscriptionRepository(connection_factory=lambda: connection)

    with pytest.raises(PersistenceError):
        repository.list_records()

    assert connection.rollbacks == 1
    assert connection.commits == 0


def test_shared_connection_is_left_to_the_caller():
    connection = _ScriptedConnection(rows=[{"owner": "run-1"}])
    repository = PostgresSubscriptionRepository(conn=connection)

    assert repository.acquire_job_lock("daily_subscription_job", "run-1", ttl_seconds=900) is True
    assert connection.commits == 0
    assert connection.closed is False
    assert connection.statements[0][1] == ("daily_subscription_job", "run-1", 900)


def test_billing_config_defaults_and_validation():
    config = load_billing_config({})

    assert config.billing_cycle_days == 30
    assert config.grace_period_days == 5
    assert config.expiry_warning_days == 1
    assert config.subscription_amount == 2500
    assert config.currency == "NGN"
    assert config.cron_secret is None
    assert config.scheduler_enabled is False

    tuned = load_billing_config({"GRACE_PERIOD_DAYS": "7", "SUBSCRIPTION_CURRENCY": "ghs", "CRON_SECRET": "s"})
    assert tuned.grace_period_days == 7
    assert tuned.currency == "GHS"
    assert tuned.cron_secret == "s"
    assert config.notification_claim_ttl_seconds == 900
    assert load_billing_config({"NOTIFICATION_CLAIM_TTL_SECONDS": "0"}).notification_claim_ttl_seconds == 1

    with pytest.raises(ValueError):
        load_billing_config({"SUBSCRIPTION_JOB_HOUR_UTC": "24"})
    with pytest.raises(ValueError):
        load_billing_config({"BILLING_CYCLE_DAYS": "monthly"})
