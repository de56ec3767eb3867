"""Admin lookups. Admins are provisioned elsewhere; this core only reads them."""

from __future__ import annotations

from typing import Any, Optional

from booking_desk.db.types import Transaction


def upsert_admin(tx: Transaction, admin_id: int, timezone: str) -> None:
    tx.execute(
        """
        INSERT INTO admins (id, timezone) VALUES (%s, %s)
        ON CONFLICT (id) DO UPDATE SET timezone = excluded.timezone
        """,
        (admin_id, timezone),
    )


def get_admin(tx: Transaction, admin_id: int) -> Optional[dict[str, Any]]:
    return tx.fetchone("SELECT * FROM admins WHERE id = %s", (admin_id,))
