"""Cached external calendar events."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Optional

from booking_desk.db.types import Transaction


def upsert_interval(
    tx: Transaction,
    integration_id: str,
    external_event_id: str,
    start_utc: datetime,
    end_utc: datetime,
    title: Optional[str],
    is_busy: bool,
    now: datetime,
) -> None:
    tx.execute(
        """
        INSERT INTO busy_intervals (
            integration_id, external_event_id, start_utc, end_utc, title, is_busy, synced_at
        ) VALUES (%s, %s, %s, %s, %s, %s, %s)
        ON CONFLICT (integration_id, external_event_id) DO UPDATE SET
            start_utc = excluded.start_utc,
            end_utc = excluded.end_utc,
            title = excluded.title,
            is_busy = excluded.is_busy,
            synced_at = excluded.synced_at
        """,
        (integration_id, external_event_id, start_utc, end_utc, title, is_busy, now),
    )


def delete_interval(tx: Transaction, integration_id: str, external_event_id: str) -> int:
    return tx.execute(
        "DELETE FROM busy_intervals WHERE integration_id = %s AND external_event_id = %s",
        (integration_id, external_event_id),
    )


def delete_missing_in_window(
    tx: Transaction,
    integration_id: str,
    keep_event_ids: Iterable[str],
    window_start: datetime,
    window_end: datetime,
) -> int:
    """Drop cached events inside the window that the provider no longer reports."""
    rows = tx.fetchall(
        """
        SELECT external_event_id FROM busy_intervals
        WHERE integration_id = %s AND start_utc < %s AND end_utc > %s
        """,
        (integration_id, window_end, window_start),
    )
    keep = set(keep_event_ids)
    removed = 0
    for row in rows:
        if row["external_event_id"] not in keep:
            removed += delete_interval(tx, integration_id, row["external_event_id"])
    return removed


def list_for_integration(tx: Transaction, integration_id: str) -> list[dict[str, Any]]:
    return tx.fetchall(
        """
        SELECT * FROM busy_intervals WHERE integration_id = %s
        ORDER BY start_utc ASC, external_event_id ASC
        """,
        (integration_id,),
    )


def list_busy_for_admin(
    tx: Transaction, admin_id: int, range_start: datetime, range_end: datetime
) -> list[dict[str, Any]]:
    """Busy intervals from every calendar the admin has connected, overlapping the range."""
    return tx.fetchall(
        """
        SELECT b.* FROM busy_intervals b
        JOIN calendar_integrations c ON c.id = b.integration_id
        WHERE c.admin_id = %s AND b.is_busy = %s
          AND b.start_utc < %s AND b.end_utc > %s
        ORDER BY b.start_utc ASC
        """,
        (admin_id, True, range_end, range_start),
    )


def delete_older_than(
    tx: Transaction, cutoff: datetime, integration_id: Optional[str] = None
) -> int:
    if integration_id:
        return tx.execute(
            "DELETE FROM busy_intervals WHERE integration_id = %s AND end_utc < %s",
            (integration_id, cutoff),
        )
    return tx.execute("DELETE FROM busy_intervals WHERE end_utc < %s", (cutoff,))
