"""Calendar integration queries."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from booking_desk.db.types import Transaction


def upsert_integration(
    tx: Transaction,
    integration_id: str,
    admin_id: int,
    provider: str,
    access_token: str,
    refresh_token: Optional[str],
    token_expires_at: Optional[datetime],
    calendar_id: str,
    now: datetime,
) -> str:
    """Insert or replace credentials for (admin, provider); returns the row id.

    A reconnect keeps the existing row id and resets sync state so the next sync
    is a full one.
    """
    tx.execute(
        """
        INSERT INTO calendar_integrations (
            id, admin_id, provider, access_token, refresh_token, token_expires_at,
            calendar_id, sync_token, status, last_error, created_at, updated_at
        ) VALUES (%s, %s, %s, %s, %s, %s, %s, NULL, 'disconnected', NULL, %s, %s)
        ON CONFLICT (admin_id, provider) DO UPDATE SET
            access_token = excluded.access_token,
            refresh_token = excluded.refresh_token,
            token_expires_at = excluded.token_expires_at,
            sync_token = NULL,
            status = 'disconnected',
            last_error = NULL,
            updated_at = excluded.updated_at
        """,
        (
            integration_id,
            admin_id,
            provider,
            access_token,
            refresh_token,
            token_expires_at,
            calendar_id,
            now,
            now,
        ),
    )
    row = tx.fetchone(
        "SELECT id FROM calendar_integrations WHERE admin_id = %s AND provider = %s",
        (admin_id, provider),
    )
    return row["id"]  # type: ignore[index]


def get_integration(tx: Transaction, integration_id: str) -> Optional[dict[str, Any]]:
    return tx.fetchone(
        "SELECT * FROM calendar_integrations WHERE id = %s", (integration_id,)
    )


def get_integration_for_admin(
    tx: Transaction, admin_id: int, provider: str
) -> Optional[dict[str, Any]]:
    return tx.fetchone(
        "SELECT * FROM calendar_integrations WHERE admin_id = %s AND provider = %s",
        (admin_id, provider),
    )


def list_integrations(
    tx: Transaction, statuses: Optional[list[str]] = None
) -> list[dict[str, Any]]:
    query = "SELECT * FROM calendar_integrations"
    params: list[Any] = []
    if statuses:
        query += " WHERE status IN (" + ", ".join(["%s"] * len(statuses)) + ")"
        params.extend(statuses)
    query += " ORDER BY created_at ASC"
    return tx.fetchall(query, params)


def update_tokens(
    tx: Transaction,
    integration_id: str,
    access_token: str,
    refresh_token: Optional[str],
    token_expires_at: datetime,
    now: datetime,
) -> None:
    tx.execute(
        """
        UPDATE calendar_integrations
        SET access_token = %s, refresh_token = %s, token_expires_at = %s, updated_at = %s
        WHERE id = %s
        """,
        (access_token, refresh_token, token_expires_at, now, integration_id),
    )


def mark_sync_success(
    tx: Transaction, integration_id: str, sync_token: Optional[str], now: datetime
) -> None:
    tx.execute(
        """
        UPDATE calendar_integrations
        SET sync_token = %s, last_sync_at = %s, status = 'active', last_error = NULL,
            updated_at = %s
        WHERE id = %s
        """,
        (sync_token, now, now, integration_id),
    )


def mark_error(
    tx: Transaction, integration_id: str, message: str, now: datetime
) -> None:
    """Record a failure; the continuation token and cached intervals stay as they are."""
    tx.execute(
        """
        UPDATE calendar_integrations
        SET status = 'error', last_error = %s, updated_at = %s
        WHERE id = %s
        """,
        (message, now, integration_id),
    )


def delete_integration_for_admin(tx: Transaction, admin_id: int, provider: str) -> int:
    return tx.execute(
        "DELETE FROM calendar_integrations WHERE admin_id = %s AND provider = %s",
        (admin_id, provider),
    )
