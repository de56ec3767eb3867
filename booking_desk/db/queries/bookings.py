"""Booking queries."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional, Sequence

from booking_desk.db.types import Transaction


def _in_clause(values: Sequence[Any]) -> str:
    return "(" + ", ".join(["%s"] * len(values)) + ")"


def find_overlapping(
    tx: Transaction,
    admin_id: int,
    start_utc: datetime,
    end_utc: datetime,
    statuses: Sequence[str],
) -> Optional[dict[str, Any]]:
    """First booking in one of ``statuses`` that half-open-overlaps the interval."""
    return tx.fetchone(
        f"""
        SELECT * FROM bookings
        WHERE admin_id = %s AND status IN {_in_clause(statuses)}
          AND start_utc < %s AND end_utc > %s
        ORDER BY start_utc ASC
        LIMIT 1
        """,
        (admin_id, *statuses, end_utc, start_utc),
    )


def list_overlapping(
    tx: Transaction,
    admin_id: int,
    range_start: datetime,
    range_end: datetime,
    statuses: Sequence[str],
) -> list[dict[str, Any]]:
    return tx.fetchall(
        f"""
        SELECT * FROM bookings
        WHERE admin_id = %s AND status IN {_in_clause(statuses)}
          AND start_utc < %s AND end_utc > %s
        ORDER BY start_utc ASC
        """,
        (admin_id, *statuses, range_end, range_start),
    )


def insert_booking(
    tx: Transaction,
    booking_id: str,
    admin_id: int,
    start_utc: datetime,
    end_utc: datetime,
    title: Optional[str],
    requester_name: str,
    requester_email: str,
    notes: Optional[str],
    video_provider: Optional[str],
    timezone: str,
    status: str,
    now: datetime,
) -> None:
    tx.execute(
        """
        INSERT INTO bookings (
            id, admin_id, start_utc, end_utc, title, requester_name, requester_email,
            notes, video_provider, timezone, status, created_at, updated_at
        ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        """,
        (
            booking_id,
            admin_id,
            start_utc,
            end_utc,
            title,
            requester_name,
            requester_email,
            notes,
            video_provider,
            timezone,
            status,
            now,
            now,
        ),
    )


def get_booking(
    tx: Transaction, booking_id: str, admin_id: Optional[int] = None
) -> Optional[dict[str, Any]]:
    if admin_id is None:
        return tx.fetchone("SELECT * FROM bookings WHERE id = %s", (booking_id,))
    return tx.fetchone(
        "SELECT * FROM bookings WHERE id = %s AND admin_id = %s",
        (booking_id, admin_id),
    )


def transition_booking(
    tx: Transaction,
    booking_id: str,
    from_status: str,
    to_status: str,
    now: datetime,
    video_link: Optional[str] = None,
    external_event_id: Optional[str] = None,
    rejection_reason: Optional[str] = None,
) -> int:
    """Compare-and-set the status; returns 0 when the row was not in ``from_status``."""
    return tx.execute(
        """
        UPDATE bookings
        SET status = %s,
            video_link = COALESCE(%s, video_link),
            external_event_id = COALESCE(%s, external_event_id),
            rejection_reason = COALESCE(%s, rejection_reason),
            updated_at = %s
        WHERE id = %s AND status = %s
        """,
        (
            to_status,
            video_link,
            external_event_id,
            rejection_reason,
            now,
            booking_id,
            from_status,
        ),
    )


def list_bookings(
    tx: Transaction,
    admin_id: int,
    statuses: Optional[Sequence[str]] = None,
    range_start: Optional[datetime] = None,
    range_end: Optional[datetime] = None,
) -> list[dict[str, Any]]:
    query = "SELECT * FROM bookings WHERE admin_id = %s"
    params: list[Any] = [admin_id]
    if statuses:
        query += f" AND status IN {_in_clause(statuses)}"
        params.extend(statuses)
    if range_start is not None:
        query += " AND end_utc > %s"
        params.append(range_start)
    if range_end is not None:
        query += " AND start_utc < %s"
        params.append(range_end)
    query += " ORDER BY start_utc ASC"
    return tx.fetchall(query, params)
