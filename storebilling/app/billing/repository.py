"""Persistence layer for vendor subscription records."""
from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Callable, Iterable, Mapping, Optional, Sequence

import psycopg2
import psycopg2.extras
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from ...app_context import get_conn
from .errors import PersistenceError
from .models import (
    NotificationKind,
    NotificationRecord,
    NotificationStatus,
    PendingNotification,
    SubscriptionRecord,
    SubscriptionStatus,
    VendorProfile,
)

# Record attribute -> ``stores`` column for every field a transition may write.
_COLUMN_FOR_FIELD = {
    "status": "subscription_status",
    "current_period_end": "current_period_end",
    "grace_end": "grace_end",
    "frozen_at": "frozen_at",
    "last_processed_payment_ref": "last_processed_payment_ref",
    "processed_payment_refs": "processed_payment_refs",
    "last_tick_date": "last_tick_date",
    "store_visible": "is_visible",
}


@contextmanager
def managed_connection(
    conn: Optional[PgConnection] = None,
    factory: Callable[[], PgConnection] = get_conn,
):
    """Context manager that manages transaction boundaries for optional connections."""

    if conn is not None:
        yield conn, False
        return

    connection = factory()
    try:
        yield connection, True
        connection.commit()
    except Exception:
        connection.rollback()
        raise
    finally:
        connection.close()


def _row_to_record(row: dict) -> SubscriptionRecord:
    return SubscriptionRecord(
        vendor_id=row["vendor_id"],
        store_id=row["store_id"],
        store_name=row.get("store_name"),
        status=SubscriptionStatus(row["subscription_status"]),
        current_period_end=row.get("current_period_end"),
        grace_end=row.get("grace_end"),
        frozen_at=row.get("frozen_at"),
        last_processed_payment_ref=row.get("last_processed_payment_ref"),
        processed_payment_refs=tuple(row.get("processed_payment_refs") or ()),
        last_tick_date=row.get("last_tick_date"),
        store_visible=bool(row.get("is_visible", True)),
        version=int(row["version"]),
        updated_at=row["updated_at"],
    )


def _row_to_notification(row: dict) -> NotificationRecord:
    return NotificationRecord(
        vendor_id=row["vendor_id"],
        kind=NotificationKind(row["kind"]),
        period_key=row["period_key"],
        status=NotificationStatus(row["status"]),
        attempts=int(row["attempts"]),
        context=row.get("context") or {},
        last_error=row.get("last_error"),
        created_at=row["created_at"],
        updated_at=row.get("updated_at") or row["created_at"],
        sent_at=row.get("sent_at"),
    )


def _column_value(field: str, value: Any) -> Any:
    if isinstance(value, SubscriptionStatus):
        return value.value
    if field == "processed_payment_refs":
        # psycopg2 adapts lists, not tuples, to ARRAY.
        return list(value or ())
    return value


class PostgresSubscriptionRepository:
    """Stores, vendor contacts, the notification ledger and job locks in PostgreSQL.

    Record writes are single conditional ``UPDATE`` statements guarded by the
    ``version`` column, so concurrent writers for the same vendor never
    overwrite each other silently.
    """

    def __init__(
        self,
        *,
        conn: Optional[PgConnection] = None,
        connection_factory: Callable[[], PgConnection] = get_conn,
        claim_ttl_seconds: int = 900,
    ) -> None:
        self._conn = conn
        self._factory = connection_factory
        self._claim_ttl_seconds = claim_ttl_seconds

    @contextmanager
    def _cursor(self) -> Iterable[PgCursor]:
        try:
            with managed_connection(self._conn, self._factory) as (connection, _):
                cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
                try:
                    yield cursor
                finally:
                    cursor.close()
        except psycopg2.Error as exc:
            raise PersistenceError(f"Subscription storage failure: {exc}") from exc

    def find_by_vendor(self, vendor_id: str) -> Optional[SubscriptionRecord]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM stores
                WHERE vendor_id = %s
                LIMIT 1
                """,
                (vendor_id,),
            )
            row = cursor.fetchone()
            return _row_to_record(row) if row else None

    def list_records(
        self,
        *,
        statuses: Optional[Sequence[SubscriptionStatus]] = None,
    ) -> list[SubscriptionRecord]:
        with self._cursor() as cursor:
            if statuses:
                cursor.execute(
                    """
                    SELECT *
                    FROM stores
                    WHERE subscription_status = ANY(%s)
                    ORDER BY vendor_id
                    """,
                    ([status.value for status in statuses],),
                )
            else:
                cursor.execute("SELECT * FROM stores ORDER BY vendor_id")
            rows = cursor.fetchall() or []
            return [_row_to_record(row) for row in rows]

    def update_subscription_fields(
        self,
        vendor_id: str,
        fields: Mapping[str, Any],
        *,
        expected_version: int,
        notifications: Sequence[PendingNotification] = (),
    ) -> Optional[SubscriptionRecord]:
        """Apply ``fields`` if the row is still at ``expected_version``.

        ``notifications`` are queued as pending ledger rows in the same
        transaction, so a committed change always leaves its notices behind
        for delivery or redelivery.
        """
        unknown = set(fields) - set(_COLUMN_FOR_FIELD)
        if unknown:
            raise ValueError(f"Unsupported subscription fields: {sorted(unknown)}")

        assignments = [f"{_COLUMN_FOR_FIELD[name]} = %({name})s" for name in fields]
        assignments.extend(["version = version + 1", "updated_at = NOW()"])
        params = {name: _column_value(name, value) for name, value in fields.items()}
        params.update({"_vendor_id": vendor_id, "_expected_version": expected_version})

        with self._cursor() as cursor:
            cursor.execute(
                f"""
                UPDATE stores
                SET {", ".join(assignments)}
                WHERE vendor_id = %(_vendor_id)s AND version = %(_expected_version)s
                RETURNING *
                """,
                params,
            )
            row = cursor.fetchone()
            if not row:
                return None
            for notification in notifications:
                cursor.execute(
                    """
                    INSERT INTO subscription_notifications (
                        vendor_id,
                        kind,
                        period_key,
                        status,
                        attempts,
                        context
                    )
                    VALUES (%s, %s, %s, %s, 0, %s)
                    ON CONFLICT (vendor_id, kind, period_key) DO NOTHING
                    """,
                    (
                        notification.vendor_id,
                        notification.kind.value,
                        notification.period_key,
                        NotificationStatus.PENDING.value,
                        psycopg2.extras.Json(notification.context),
                    ),
                )
            return _row_to_record(row)

    def find_vendor(self, vendor_id: str) -> Optional[VendorProfile]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT id, email, COALESCE(display_name, name) AS name
                FROM users
                WHERE id = %s
                LIMIT 1
                """,
                (vendor_id,),
            )
            row = cursor.fetchone()
            if not row:
                return None
            return VendorProfile(vendor_id=str(row["id"]), email=row.get("email"), name=row.get("name"))

    def claim_notification(self, notification: PendingNotification) -> bool:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO subscription_notifications (
                    vendor_id,
                    kind,
                    period_key,
                    status,
                    attempts,
                    context
                )
                VALUES (%s, %s, %s, %s, 1, %s)
                ON CONFLICT (vendor_id, kind, period_key) DO UPDATE SET
                    status = EXCLUDED.status,
                    attempts = subscription_notifications.attempts + 1,
                    updated_at = NOW()
                WHERE subscription_notifications.status = ANY(%s)
                   OR (
                       subscription_notifications.status = %s
                       AND subscription_notifications.updated_at < NOW() - make_interval(secs => %s)
                   )
                RETURNING vendor_id
                """,
                (
                    notification.vendor_id,
                    notification.kind.value,
                    notification.period_key,
                    NotificationStatus.SENDING.value,
                    psycopg2.extras.Json(notification.context),
                    [NotificationStatus.PENDING.value, NotificationStatus.FAILED.value],
                    NotificationStatus.SENDING.value,
                    self._claim_ttl_seconds,
                ),
            )
            return cursor.fetchone() is not None

    def mark_notification_sent(self, key: tuple[str, str, str]) -> None:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE subscription_notifications
                SET status = %s, sent_at = NOW(), last_error = NULL, updated_at = NOW()
                WHERE vendor_id = %s AND kind = %s AND period_key = %s
                """,
                (NotificationStatus.SENT.value, *key),
            )

    def mark_notification_failed(self, key: tuple[str, str, str], error: str) -> None:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE subscription_notifications
                SET status = %s, last_error = %s, updated_at = NOW()
                WHERE vendor_id = %s AND kind = %s AND period_key = %s
                """,
                (NotificationStatus.FAILED.value, error[:1000], *key),
            )

    def list_undelivered_notifications(self, *, limit: int = 500) -> list[NotificationRecord]:
        """Pending and failed rows, plus ``sending`` rows abandoned past the claim TTL."""
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM subscription_notifications
                WHERE status = ANY(%s)
                   OR (status = %s AND updated_at < NOW() - make_interval(secs => %s))
                ORDER BY created_at
                LIMIT %s
                """,
                (
                    [NotificationStatus.PENDING.value, NotificationStatus.FAILED.value],
                    NotificationStatus.SENDING.value,
                    self._claim_ttl_seconds,
                    limit,
                ),
            )
            rows = cursor.fetchall() or []
            return [_row_to_notification(row) for row in rows]

    def acquire_job_lock(self, name: str, owner: str, *, ttl_seconds: int) -> bool:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO subscription_job_locks (name, owner, expires_at)
                VALUES (%s, %s, NOW() + make_interval(secs => %s))
                ON CONFLICT (name) DO UPDATE SET
                    owner = EXCLUDED.owner,
                    expires_at = EXCLUDED.expires_at
                WHERE subscription_job_locks.expires_at < NOW()
                RETURNING owner
                """,
                (name, owner, ttl_seconds),
            )
            return cursor.fetchone() is not None

    def release_job_lock(self, name: str, owner: str) -> None:
        with self._cursor() as cursor:
            cursor.execute(
                "DELETE FROM subscription_job_locks WHERE name = %s AND owner = %s",
                (name, owner),
            )


__all__ = ["PostgresSubscriptionRepository", "managed_connection"]
