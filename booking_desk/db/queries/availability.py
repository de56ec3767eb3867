"""Availability block queries."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from booking_desk.db.types import Transaction


def insert_block(
    tx: Transaction,
    block_id: str,
    admin_id: int,
    day_of_week: int,
    start_time: str,
    end_time: str,
    timezone: str,
    is_active: bool,
    now: datetime,
) -> None:
    tx.execute(
        """
        INSERT INTO availability_blocks (
            id, admin_id, day_of_week, start_time, end_time, timezone,
            is_active, created_at, updated_at
        ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
        """,
        (
            block_id,
            admin_id,
            day_of_week,
            start_time,
            end_time,
            timezone,
            is_active,
            now,
            now,
        ),
    )


def update_block(
    tx: Transaction,
    block_id: str,
    day_of_week: int,
    start_time: str,
    end_time: str,
    timezone: str,
    is_active: bool,
    now: datetime,
) -> int:
    return tx.execute(
        """
        UPDATE availability_blocks
        SET day_of_week = %s, start_time = %s, end_time = %s, timezone = %s,
            is_active = %s, updated_at = %s
        WHERE id = %s
        """,
        (day_of_week, start_time, end_time, timezone, is_active, now, block_id),
    )


def get_block(tx: Transaction, block_id: str) -> Optional[dict[str, Any]]:
    return tx.fetchone("SELECT * FROM availability_blocks WHERE id = %s", (block_id,))


def delete_block(tx: Transaction, block_id: str) -> int:
    return tx.execute("DELETE FROM availability_blocks WHERE id = %s", (block_id,))


def list_blocks(
    tx: Transaction, admin_id: int, include_inactive: bool = False
) -> list[dict[str, Any]]:
    query = "SELECT * FROM availability_blocks WHERE admin_id = %s"
    params: list[Any] = [admin_id]
    if not include_inactive:
        query += " AND is_active = %s"
        params.append(True)
    query += " ORDER BY day_of_week ASC, start_time ASC"
    return tx.fetchall(query, params)
