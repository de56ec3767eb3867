"""Wires the scheduling components together behind one object."""

import logging
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from booking_desk.config import ServerConfig
from booking_desk.db.queries import admins as admins_q
from booking_desk.db.queries import integrations as integrations_q
from booking_desk.db.types import DatabaseInterface
from booking_desk.engine.approvals import ApprovalOutcome, ApprovalService
from booking_desk.engine.availability import (
    AvailabilityBlockService,
    SlotCache,
    SlotEngine,
)
from booking_desk.engine.bookings import BookingGuard, BookingNotifier
from booking_desk.engine.calendar_sync import CalendarSync, GoogleCalendarClient, SyncResult
from booking_desk.engine.crypto import TokenCipher
from booking_desk.engine.database import create_database
from booking_desk.engine.oauth2 import CredentialVault
from booking_desk.engine.video import VideoService
from booking_desk.errors import NotFoundError
from booking_desk.models import (
    Admin,
    CalendarIntegration,
    IntegrationStatus,
    parse_timezone,
    utcnow,
)

logger = logging.getLogger(__name__)


class SchedulingService:
    def __init__(
        self,
        config: ServerConfig,
        db: DatabaseInterface,
        calendar_client_factory: Callable[[str], Any] = GoogleCalendarClient,
        notifier: Optional[BookingNotifier] = None,
        zoom_client: Any = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config
        self.db = db
        self.clock = clock

        self.slot_cache = SlotCache(config.slots.cache_ttl_seconds)
        self.cipher = TokenCipher(config.encryption_key)
        self.vault = CredentialVault(db, self.cipher, config.google, clock=clock)
        self.sync = CalendarSync(
            db,
            self.vault,
            config.sync,
            client_factory=calendar_client_factory,
            on_synced=self.slot_cache.invalidate_admin,
            clock=clock,
        )
        self.blocks = AvailabilityBlockService(
            db, on_change=self.slot_cache.invalidate_admin, clock=clock
        )
        self.slots = SlotEngine(
            db, cache=self.slot_cache, default_granularity_minutes=config.slots.granularity_minutes
        )
        self.guard = BookingGuard(
            db, notifier=notifier, on_change=self.slot_cache.invalidate_admin, clock=clock
        )
        self.video = VideoService(config.zoom, zoom_client=zoom_client)
        self.approvals = ApprovalService(
            self.guard, self.vault, self.video, client_factory=calendar_client_factory
        )

    @classmethod
    def from_config(cls, config: ServerConfig, **kwargs: Any) -> "SchedulingService":
        db = create_database(config.database)
        db.initialize()
        return cls(config, db, **kwargs)

    def close(self) -> None:
        self.db.close()

    # Admins are provisioned by the surrounding application.
    def ensure_admin(self, admin_id: int, timezone_name: Optional[str] = None) -> Admin:
        zone_name = timezone_name or self.config.timezone
        parse_timezone(zone_name)
        with self.db.transaction() as tx:
            admins_q.upsert_admin(tx, admin_id, zone_name)
        return Admin(id=admin_id, timezone=zone_name)

    def get_admin(self, admin_id: int) -> Admin:
        with self.db.transaction() as tx:
            row = admins_q.get_admin(tx, admin_id)
        if not row:
            raise NotFoundError(f"Admin {admin_id} not found")
        return Admin.from_row(row)

    def connect_calendar(
        self, admin_id: int, code: str, redirect_uri: Optional[str] = None
    ) -> SyncResult:
        """Finish the OAuth flow and run the first full sync right away."""
        integration_id = self.vault.complete_authorization(admin_id, code, redirect_uri)
        return self.sync.full_sync(integration_id)

    def calendar_status(self, admin_id: int) -> Optional[CalendarIntegration]:
        return self.vault.get_integration_for_admin(admin_id)

    def sync_admin(self, admin_id: int, full: bool = False) -> SyncResult:
        integration = self.vault.get_integration_for_admin(admin_id)
        if not integration:
            raise NotFoundError(f"No calendar connected for admin {admin_id}")
        if full:
            return self.sync.full_sync(integration.id)
        return self.sync.incremental_sync(integration.id)

    def disconnect_calendar(self, admin_id: int) -> None:
        self.vault.disconnect(admin_id)
        self.slot_cache.invalidate_admin(admin_id)

    def sync_active_integrations(self, timeout_seconds: Optional[float] = None) -> List[SyncResult]:
        """Incrementally sync every active integration, each with its own deadline."""
        timeout = timeout_seconds or self.config.sync.timeout_seconds
        with self.db.transaction() as tx:
            rows = integrations_q.list_integrations(tx, [IntegrationStatus.ACTIVE.value])

        results = []
        for row in rows:
            deadline = time.monotonic() + timeout
            results.append(self.sync.incremental_sync(row["id"], deadline=deadline))
        return results

    def approve_booking(self, booking_id: str, admin_id: int) -> ApprovalOutcome:
        return self.approvals.approve_booking(booking_id, admin_id)

    def reject_booking(
        self, booking_id: str, admin_id: int, reason: Optional[str] = None
    ) -> ApprovalOutcome:
        return self.approvals.reject_booking(booking_id, admin_id, reason)

    def cancel_booking(self, booking_id: str, admin_id: int) -> ApprovalOutcome:
        return self.approvals.cancel_booking(booking_id, admin_id)

    def summary(self) -> Dict[str, Any]:
        with self.db.transaction() as tx:
            rows = integrations_q.list_integrations(tx)
        counts: Dict[str, int] = {status.value: 0 for status in IntegrationStatus}
        for row in rows:
            counts[row["status"]] = counts.get(row["status"], 0) + 1
        return {"integrations": counts}
