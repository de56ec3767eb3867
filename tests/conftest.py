"""Pytest fixtures for the booking engine tests."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from booking_desk.config import (
    DatabaseConfig,
    GoogleOAuthConfig,
    ServerConfig,
    SlotConfig,
)
from booking_desk.db.queries import busy_intervals as busy_q
from booking_desk.db.queries import integrations as integrations_q
from booking_desk.engine.database import SqliteDatabase
from booking_desk.engine.service import SchedulingService
from booking_desk.errors import SyncTokenExpired
from booking_desk.models import GOOGLE_CALENDAR_PROVIDER

logging.basicConfig(level=logging.INFO)

UTC = timezone.utc
# 2030-01-07 is a Monday.
MONDAY = datetime(2030, 1, 7, tzinfo=UTC)
NOW = datetime(2030, 1, 1, 12, 0, tzinfo=UTC)


class FrozenClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: Any) -> None:
        self.now += timedelta(**kwargs)


class FakeCalendar:
    """Stands in for GoogleCalendarClient; one instance is shared by every token."""

    def __init__(self):
        self.full_pages: List[Dict[str, Any]] = [{"items": [], "nextSyncToken": "sync-1"}]
        self.delta_pages: List[Dict[str, Any]] = [{"items": [], "nextSyncToken": "sync-2"}]
        self.expired_tokens: set = set()
        self.fail_with: Optional[Exception] = None
        self.list_calls: List[Dict[str, Any]] = []
        self.created: List[Dict[str, Any]] = []
        self.deleted: List[str] = []
        self.tokens: List[str] = []
        self.create_response: Dict[str, Any] = {"id": "evt-created"}
        self.create_error: Optional[Exception] = None

    def factory(self, access_token: str) -> "FakeCalendar":
        self.tokens.append(access_token)
        return self

    def list_events(
        self,
        calendar_id: str,
        page_token: Optional[str] = None,
        sync_token: Optional[str] = None,
        time_min: Optional[str] = None,
        time_max: Optional[str] = None,
    ) -> Dict[str, Any]:
        self.list_calls.append(
            {
                "calendar_id": calendar_id,
                "page_token": page_token,
                "sync_token": sync_token,
                "time_min": time_min,
                "time_max": time_max,
            }
        )
        if self.fail_with:
            raise self.fail_with
        if sync_token and sync_token in self.expired_tokens:
            raise SyncTokenExpired("Sync token is no longer valid", status_code=410)

        pages = self.delta_pages if sync_token else self.full_pages
        index = int(page_token) if page_token else 0
        page = dict(pages[index])
        if index + 1 < len(pages):
            page["nextPageToken"] = str(index + 1)
            page.pop("nextSyncToken", None)
        return page

    def create_event(
        self, calendar_id: str, event_data: Dict[str, Any], conference_data_version: int = 0
    ) -> Dict[str, Any]:
        if self.create_error:
            raise self.create_error
        self.created.append(
            {
                "calendar_id": calendar_id,
                "body": event_data,
                "conference_data_version": conference_data_version,
            }
        )
        return dict(self.create_response)

    def delete_event(self, calendar_id: str, event_id: str) -> bool:
        self.deleted.append(event_id)
        return True


def timed_event(
    event_id: str,
    start: datetime,
    end: datetime,
    summary: str = "Busy",
    **extra: Any,
) -> Dict[str, Any]:
    event = {
        "id": event_id,
        "status": "confirmed",
        "summary": summary,
        "start": {"dateTime": start.isoformat()},
        "end": {"dateTime": end.isoformat()},
    }
    event.update(extra)
    return event


@pytest.fixture
def clock():
    return FrozenClock(NOW)


@pytest.fixture
def config(tmp_path):
    return ServerConfig(
        timezone="UTC",
        encryption_key="test-encryption-secret",
        google=GoogleOAuthConfig(
            client_id="client-id",
            client_secret="client-secret",
            redirect_uri="http://localhost:8080/api/calendar/callback",
        ),
        slots=SlotConfig(granularity_minutes=30, cache_ttl_seconds=60),
        database=DatabaseConfig(sqlite_path=str(tmp_path / "booking_desk.db")),
    )


@pytest.fixture
def db(config):
    database = SqliteDatabase(config.database.sqlite_path)
    database.initialize()
    yield database
    database.close()


@pytest.fixture
def calendar():
    return FakeCalendar()


@pytest.fixture
def zoom_client():
    from unittest.mock import MagicMock

    return MagicMock()


@pytest.fixture
def service(config, db, calendar, clock, zoom_client):
    svc = SchedulingService(
        config,
        db,
        calendar_client_factory=calendar.factory,
        zoom_client=zoom_client,
        clock=clock,
    )
    svc.ensure_admin(1, "UTC")
    return svc


def seed_integration(
    service: SchedulingService,
    admin_id: int = 1,
    access_token: str = "access-token",
    refresh_token: Optional[str] = "refresh-token",
    expires_in: timedelta = timedelta(hours=1),
    sync_token: Optional[str] = None,
    status: str = "active",
) -> str:
    """Store an integration the way the vault would after a successful connect."""
    now = service.clock()
    with service.db.transaction() as tx:
        integration_id = integrations_q.upsert_integration(
            tx,
            integration_id=f"integration-{admin_id}",
            admin_id=admin_id,
            provider=GOOGLE_CALENDAR_PROVIDER,
            access_token=service.cipher.encrypt(access_token),
            refresh_token=service.cipher.encrypt_optional(refresh_token),
            token_expires_at=now + expires_in,
            calendar_id="primary",
            now=now,
        )
        if status == "active":
            integrations_q.mark_sync_success(tx, integration_id, sync_token, now)
        elif status == "error":
            integrations_q.mark_error(tx, integration_id, "seeded failure", now)
    return integration_id


def seed_busy(
    service: SchedulingService,
    integration_id: str,
    event_id: str,
    start: datetime,
    end: datetime,
    is_busy: bool = True,
) -> None:
    with service.db.transaction() as tx:
        busy_q.upsert_interval(
            tx, integration_id, event_id, start, end, "Busy", is_busy, service.clock()
        )


@pytest.fixture
def integration_id(service):
    return seed_integration(service)
