from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from typing import Any, Optional, Sequence


# Lock namespaces for DatabaseInterface.transaction; the key inside a namespace
# is the admin id.
ADMIN_LOCK_NAMESPACE = 7301
CALENDAR_LOCK_NAMESPACE = 7302


class Transaction(ABC):
    """One unit of work on a single connection.

    Statements use ``%s`` placeholders regardless of backend. Rows come back as
    plain dicts with timestamps as aware UTC datetimes and flags as bools.
    """

    @abstractmethod
    def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Run a statement and return the affected row count."""

    @abstractmethod
    def fetchone(self, sql: str, params: Sequence[Any] = ()) -> Optional[dict[str, Any]]:
        pass

    @abstractmethod
    def fetchall(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        pass


class DatabaseInterface(ABC):
    @abstractmethod
    def initialize(self) -> None:
        """Create tables and indexes if they are missing."""

    @abstractmethod
    def close(self) -> None:
        pass

    @abstractmethod
    def transaction(
        self, lock_key: Optional[int] = None, namespace: int = ADMIN_LOCK_NAMESPACE
    ) -> AbstractContextManager[Transaction]:
        """Open a transaction that commits on clean exit and rolls back on error.

        When ``lock_key`` is given, the transaction is serialised against every
        other transaction holding the same (namespace, key) until it ends.
        Backends may serialise more broadly than that, never less.
        """
