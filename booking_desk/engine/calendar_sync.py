"""Google Calendar client and the busy-interval sync engine."""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

import httplib2
from dateutil import parser as dateutil_parser
from google.auth.exceptions import RefreshError, TransportError
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from booking_desk.config import SyncConfig
from booking_desk.db.queries import busy_intervals as busy_q
from booking_desk.db.queries import integrations as integrations_q
from booking_desk.db.types import CALENDAR_LOCK_NAMESPACE, DatabaseInterface, Transaction
from booking_desk.engine.locks import KeyedLocks
from booking_desk.engine.oauth2 import CredentialVault
from booking_desk.errors import (
    CredentialError,
    NotFoundError,
    SchedulingError,
    SyncTimeout,
    SyncTokenExpired,
    UpstreamError,
)
from booking_desk.models import BusyInterval, CalendarIntegration, utcnow

logger = logging.getLogger(__name__)

PAGE_SIZE = 2500

# Socket timeouts, DNS failures and dropped connections surface as these.
TRANSPORT_ERRORS = (OSError, httplib2.HttpLib2Error, TransportError)


class GoogleCalendarClient:
    """Thin wrapper over the Calendar v3 discovery client for one access token.

    Every failure leaves as a SchedulingError: CredentialError when Google
    rejects the token, UpstreamError for HTTP and transport errors.
    """

    def __init__(self, access_token: str):
        self.credentials = Credentials(token=access_token)
        self.service: Any = None

    def _ensure_connected(self) -> Any:
        if not self.service:
            self.service = build(
                "calendar", "v3", credentials=self.credentials, cache_discovery=False
            )
        return self.service

    def list_events(
        self,
        calendar_id: str,
        page_token: Optional[str] = None,
        sync_token: Optional[str] = None,
        time_min: Optional[str] = None,
        time_max: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Fetch one page of events, either a delta since ``sync_token`` or a window."""
        params: Dict[str, Any] = {
            "calendarId": calendar_id,
            "singleEvents": True,
            "maxResults": PAGE_SIZE,
        }
        if page_token:
            params["pageToken"] = page_token
        if sync_token:
            params["syncToken"] = sync_token
        else:
            params["timeMin"] = time_min
            params["timeMax"] = time_max

        try:
            service = self._ensure_connected()
            return service.events().list(**params).execute()
        except HttpError as e:
            if e.resp.status == 410:
                raise SyncTokenExpired(
                    "Sync token is no longer valid", status_code=410
                )
            raise UpstreamError(
                f"Calendar list failed: {e}", status_code=e.resp.status
            )
        except RefreshError as e:
            raise CredentialError(f"Calendar credentials rejected: {e}")
        except TRANSPORT_ERRORS as e:
            raise UpstreamError(f"Calendar list failed: {e}")

    def create_event(
        self,
        calendar_id: str,
        event_data: Dict[str, Any],
        conference_data_version: int = 0,
    ) -> Dict[str, Any]:
        """Create an event; pass conference_data_version=1 to let Google attach Meet."""
        try:
            service = self._ensure_connected()
            event = (
                service.events()
                .insert(
                    calendarId=calendar_id,
                    body=event_data,
                    conferenceDataVersion=conference_data_version,
                )
                .execute()
            )
        except HttpError as e:
            raise UpstreamError(
                f"Calendar event creation failed: {e}", status_code=e.resp.status
            )
        except RefreshError as e:
            raise CredentialError(f"Calendar credentials rejected: {e}")
        except TRANSPORT_ERRORS as e:
            raise UpstreamError(f"Calendar event creation failed: {e}")
        logger.info(f"Created calendar event {event.get('id')}")
        return event

    def delete_event(self, calendar_id: str, event_id: str) -> bool:
        """Returns False when the event was already gone."""
        try:
            service = self._ensure_connected()
            service.events().delete(calendarId=calendar_id, eventId=event_id).execute()
        except HttpError as e:
            if e.resp.status in (404, 410):
                logger.info(f"Calendar event {event_id} already deleted")
                return False
            raise UpstreamError(
                f"Calendar event deletion failed: {e}", status_code=e.resp.status
            )
        except RefreshError as e:
            raise CredentialError(f"Calendar credentials rejected: {e}")
        except TRANSPORT_ERRORS as e:
            raise UpstreamError(f"Calendar event deletion failed: {e}")
        return True


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _format_rfc3339(value: datetime) -> str:
    return _as_utc(value).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_event(event: Dict[str, Any], integration_id: str) -> Optional[BusyInterval]:
    """Map a provider event to a cache row; None for all-day or malformed events."""
    event_id = event.get("id")
    start_ts = (event.get("start") or {}).get("dateTime")
    end_ts = (event.get("end") or {}).get("dateTime")
    if not event_id or not start_ts or not end_ts:
        return None

    start_utc = _as_utc(dateutil_parser.parse(start_ts))
    end_utc = _as_utc(dateutil_parser.parse(end_ts))
    if end_utc <= start_utc:
        logger.debug(f"Skipping zero-length event {event_id}")
        return None

    return BusyInterval(
        integration_id=integration_id,
        external_event_id=event_id,
        start_utc=start_utc,
        end_utc=end_utc,
        title=event.get("summary") or "Untitled Event",
        is_busy=event.get("transparency") != "transparent",
    )


@dataclass
class SyncResult:
    integration_id: str
    mode: str
    events_synced: int = 0
    events_removed: int = 0
    error: Optional[SchedulingError] = None
    synced_at: Optional[datetime] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.mode != "skipped"

    @property
    def status(self) -> str:
        if self.mode == "skipped":
            return "skipped"
        return "ok" if self.error is None else "error"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "integration_id": self.integration_id,
            "mode": self.mode,
            "status": self.status,
            "events_synced": self.events_synced,
            "events_removed": self.events_removed,
            "error": self.error.message if self.error else None,
            "synced_at": self.synced_at.isoformat() if self.synced_at else None,
        }


@dataclass
class _FetchedChanges:
    events: List[Dict[str, Any]] = field(default_factory=list)
    next_sync_token: Optional[str] = None


class CalendarSync:
    """Keeps the busy-interval cache in step with the external calendar.

    At most one sync runs per integration at a time; a second caller gets a
    ``skipped`` result instead of waiting. Changes are fetched completely
    before anything is written, then applied together with the new
    continuation token in one transaction, so a timeout or error never
    advances the token past unapplied events.
    """

    def __init__(
        self,
        db: DatabaseInterface,
        vault: CredentialVault,
        config: Optional[SyncConfig] = None,
        client_factory: Callable[[str], Any] = GoogleCalendarClient,
        on_synced: Optional[Callable[[int], None]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.vault = vault
        self.config = config or SyncConfig()
        self.client_factory = client_factory
        self.on_synced = on_synced
        self.clock = clock
        self._in_flight = KeyedLocks()

    def compute_window(self) -> Tuple[datetime, datetime]:
        now = self.clock()
        span = timedelta(days=self.config.window_days)
        return now - span, now + span

    def full_sync(self, integration_id: str, deadline: Optional[float] = None) -> SyncResult:
        return self._sync(integration_id, force_full=True, deadline=deadline)

    def incremental_sync(
        self, integration_id: str, deadline: Optional[float] = None
    ) -> SyncResult:
        """Delta sync from the stored token; falls back to a full sync when there is
        no token or the provider rejects it."""
        return self._sync(integration_id, force_full=False, deadline=deadline)

    def _load(self, integration_id: str) -> CalendarIntegration:
        with self.db.transaction() as tx:
            row = integrations_q.get_integration(tx, integration_id)
        if not row:
            raise NotFoundError(f"Calendar integration not found: {integration_id}")
        return CalendarIntegration.from_row(row)

    def _sync(
        self, integration_id: str, force_full: bool, deadline: Optional[float]
    ) -> SyncResult:
        if deadline is None:
            deadline = time.monotonic() + self.config.timeout_seconds

        with self._in_flight.try_hold(integration_id) as acquired:
            if not acquired:
                logger.info(f"Sync already running for integration {integration_id}, skipping")
                return SyncResult(integration_id=integration_id, mode="skipped")

            integration = self._load(integration_id)
            try:
                if force_full or not integration.sync_token:
                    if not force_full:
                        logger.info(
                            f"No sync token for integration {integration_id}, performing full sync"
                        )
                    result = self._full_sync(integration, deadline)
                else:
                    try:
                        result = self._incremental_sync(integration, deadline)
                    except SyncTokenExpired:
                        logger.warning(
                            f"Sync token invalid for integration {integration_id}, performing full sync"
                        )
                        result = self._full_sync(integration, deadline)
            except SchedulingError as e:
                logger.error(f"Sync failed for integration {integration_id}: {e.message}")
                self._record_error(integration_id, e.message)
                return SyncResult(
                    integration_id=integration_id,
                    mode="full" if force_full else "incremental",
                    error=e,
                )
            except Exception as e:
                logger.error(f"Sync failed for integration {integration_id}: {e}", exc_info=True)
                self._record_error(integration_id, str(e))
                return SyncResult(
                    integration_id=integration_id,
                    mode="full" if force_full else "incremental",
                    error=UpstreamError(str(e)),
                )

        if self.on_synced and result.ok:
            self.on_synced(integration.admin_id)
        return result

    def _record_error(self, integration_id: str, message: str) -> None:
        with self.db.transaction() as tx:
            integrations_q.mark_error(tx, integration_id, message, self.clock())

    def _apply_lock(self, integration: CalendarIntegration) -> Any:
        return self.db.transaction(
            lock_key=integration.admin_id, namespace=CALENDAR_LOCK_NAMESPACE
        )

    @staticmethod
    def _superseded(tx: Transaction, integration: CalendarIntegration) -> bool:
        """True when another process finished a sync since ``integration`` was read."""
        row = integrations_q.get_integration(tx, integration.id)
        if not row:
            raise NotFoundError(f"Calendar integration not found: {integration.id}")
        current = CalendarIntegration.from_row(row)
        if (current.sync_token, current.last_sync_at) != (
            integration.sync_token,
            integration.last_sync_at,
        ):
            logger.info(
                f"Integration {integration.id} was synced elsewhere meanwhile, discarding fetched changes"
            )
            return True
        return False

    @staticmethod
    def _check_deadline(deadline: float, integration_id: str) -> None:
        if time.monotonic() > deadline:
            raise SyncTimeout(f"Sync for integration {integration_id} timed out")

    def _fetch(
        self,
        integration: CalendarIntegration,
        deadline: float,
        sync_token: Optional[str] = None,
        time_min: Optional[str] = None,
        time_max: Optional[str] = None,
    ) -> _FetchedChanges:
        grant = self.vault.ensure_valid(integration.id)
        client = self.client_factory(grant.access_token)

        changes = _FetchedChanges()
        page_token = None
        while True:
            self._check_deadline(deadline, integration.id)
            page = client.list_events(
                grant.calendar_id,
                page_token=page_token,
                sync_token=sync_token,
                time_min=time_min,
                time_max=time_max,
            )
            changes.events.extend(page.get("items", []))
            page_token = page.get("nextPageToken")
            if not page_token:
                changes.next_sync_token = page.get("nextSyncToken")
                break
        return changes

    def _full_sync(self, integration: CalendarIntegration, deadline: float) -> SyncResult:
        window_start, window_end = self.compute_window()
        logger.info(
            f"Full sync for integration {integration.id} "
            f"(window: {window_start.isoformat()} to {window_end.isoformat()})"
        )
        changes = self._fetch(
            integration,
            deadline,
            time_min=_format_rfc3339(window_start),
            time_max=_format_rfc3339(window_end),
        )

        now = self.clock()
        synced = 0
        kept: List[str] = []
        with self._apply_lock(integration) as tx:
            if self._superseded(tx, integration):
                return SyncResult(integration_id=integration.id, mode="skipped")
            for event in changes.events:
                if event.get("status") == "cancelled":
                    continue
                interval = parse_event(event, integration.id)
                if interval is None:
                    continue
                self._upsert(tx, interval, now)
                kept.append(interval.external_event_id)
                synced += 1

            removed = busy_q.delete_missing_in_window(
                tx, integration.id, kept, window_start, window_end
            )
            self._check_deadline(deadline, integration.id)
            integrations_q.mark_sync_success(tx, integration.id, changes.next_sync_token, now)

        logger.info(
            f"Full sync for integration {integration.id} complete: {synced} events, {removed} removed"
        )
        return SyncResult(
            integration_id=integration.id,
            mode="full",
            events_synced=synced,
            events_removed=removed,
            synced_at=now,
        )

    def _incremental_sync(
        self, integration: CalendarIntegration, deadline: float
    ) -> SyncResult:
        logger.info(f"Incremental sync for integration {integration.id}")
        changes = self._fetch(integration, deadline, sync_token=integration.sync_token)

        now = self.clock()
        synced = 0
        removed = 0
        with self._apply_lock(integration) as tx:
            if self._superseded(tx, integration):
                return SyncResult(integration_id=integration.id, mode="skipped")
            for event in changes.events:
                event_id = event.get("id")
                if not event_id:
                    continue
                if event.get("status") == "cancelled":
                    removed += busy_q.delete_interval(tx, integration.id, event_id)
                    continue
                interval = parse_event(event, integration.id)
                if interval is None:
                    # An event can turn all-day; drop any timed copy we held.
                    removed += busy_q.delete_interval(tx, integration.id, event_id)
                    continue
                self._upsert(tx, interval, now)
                synced += 1

            self._check_deadline(deadline, integration.id)
            integrations_q.mark_sync_success(
                tx,
                integration.id,
                changes.next_sync_token or integration.sync_token,
                now,
            )

        logger.info(f"Incremental sync for integration {integration.id}: ~{synced} -{removed}")
        return SyncResult(
            integration_id=integration.id,
            mode="incremental",
            events_synced=synced,
            events_removed=removed,
            synced_at=now,
        )

    @staticmethod
    def _upsert(tx: Any, interval: BusyInterval, now: datetime) -> None:
        busy_q.upsert_interval(
            tx,
            interval.integration_id,
            interval.external_event_id,
            interval.start_utc,
            interval.end_utc,
            interval.title,
            interval.is_busy,
            now,
        )

    def list_intervals(self, integration_id: str) -> List[BusyInterval]:
        with self.db.transaction() as tx:
            rows = busy_q.list_for_integration(tx, integration_id)
        return [BusyInterval.from_row(row) for row in rows]

    def cleanup_old_intervals(self, integration_id: Optional[str] = None) -> int:
        """Delete cached events that ended before the retention horizon."""
        cutoff = self.clock() - timedelta(days=self.config.retention_days)
        with self.db.transaction() as tx:
            deleted = busy_q.delete_older_than(tx, cutoff, integration_id)
        logger.info(f"Cleaned up {deleted} calendar events older than {cutoff.isoformat()}")
        return deleted
