"""Booking Conflict Guard: atomic check-then-insert and the booking state machine."""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Sequence, Union

from booking_desk.db.queries import admins as admins_q
from booking_desk.db.queries import bookings as bookings_q
from booking_desk.db.types import DatabaseInterface
from booking_desk.errors import (
    ConflictError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from booking_desk.models import (
    BLOCKING_STATUSES,
    Booking,
    BookingStatus,
    Requester,
    VideoProvider,
    ensure_transition,
    parse_timezone,
    require_aware,
    utcnow,
)

logger = logging.getLogger(__name__)

MIN_DURATION = timedelta(minutes=15)
MAX_DURATION = timedelta(hours=8)


class BookingNotifier:
    """Receives booking lifecycle events. The default only logs them;
    delivery (email and the like) is plugged in by subclassing."""

    def booking_requested(self, booking: Booking) -> None:
        logger.info(
            f"Booking {booking.id} requested for admin {booking.admin_id} "
            f"at {booking.start_utc.isoformat()}"
        )

    def booking_confirmed(self, booking: Booking) -> None:
        logger.info(f"Booking {booking.id} confirmed")

    def booking_rejected(self, booking: Booking) -> None:
        logger.info(f"Booking {booking.id} rejected")

    def booking_cancelled(self, booking: Booking) -> None:
        logger.info(f"Booking {booking.id} cancelled")


def validate_requester(requester: Requester) -> Requester:
    name = (requester.name or "").strip()
    email = (requester.email or "").strip()
    if not name:
        raise ValidationError("Requester name is required")
    if "@" not in email or email.startswith("@") or email.endswith("@"):
        raise ValidationError(f"Invalid requester email '{requester.email}'")
    return Requester(name=name, email=email)


class BookingGuard:
    """Owns every write to bookings.

    ``request_booking`` runs its overlap check and insert in one transaction
    holding the admin's lock, so two overlapping requests for the same admin
    cannot both commit. Transitions are compare-and-set on the current status.
    """

    def __init__(
        self,
        db: DatabaseInterface,
        notifier: Optional[BookingNotifier] = None,
        on_change: Optional[Callable[[int], None]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.notifier = notifier or BookingNotifier()
        self.on_change = on_change
        self.clock = clock

    def _changed(self, admin_id: int) -> None:
        if self.on_change:
            self.on_change(admin_id)

    def validate_interval(self, start_utc: datetime, end_utc: datetime) -> None:
        if start_utc >= end_utc:
            raise ValidationError("Booking start must be before its end")
        duration = end_utc - start_utc
        if duration < MIN_DURATION:
            raise ValidationError("Booking must be at least 15 minutes long")
        if duration > MAX_DURATION:
            raise ValidationError("Booking may not be longer than 8 hours")
        if start_utc <= self.clock():
            raise ValidationError("Booking start time must be in the future")

    def request_booking(
        self,
        admin_id: int,
        start_utc: datetime,
        end_utc: datetime,
        requester: Requester,
        notes: Optional[str] = None,
        video_provider: Optional[Union[str, VideoProvider]] = None,
        timezone_name: Optional[str] = None,
        title: Optional[str] = None,
    ) -> Booking:
        """Create a pending booking, or raise ConflictError when the time is taken.

        Raises:
            ValidationError: bad duration, past start, unknown zone or provider
            NotFoundError: unknown admin
            ConflictError: an overlapping pending/confirmed booking exists
        """
        start_utc = require_aware(start_utc, "start_time")
        end_utc = require_aware(end_utc, "end_time")
        self.validate_interval(start_utc, end_utc)
        requester = validate_requester(requester)
        if timezone_name:
            parse_timezone(timezone_name)
        if isinstance(video_provider, str):
            video_provider = VideoProvider.from_string(video_provider)

        with self.db.transaction(lock_key=admin_id) as tx:
            admin = admins_q.get_admin(tx, admin_id)
            if not admin:
                raise NotFoundError(f"Admin {admin_id} not found")

            clash = bookings_q.find_overlapping(
                tx,
                admin_id,
                start_utc,
                end_utc,
                [s.value for s in BLOCKING_STATUSES],
            )
            if clash:
                logger.info(
                    f"Booking request for admin {admin_id} at {start_utc.isoformat()} "
                    f"conflicts with booking {clash['id']}"
                )
                raise ConflictError("The requested time is no longer available")

            now = self.clock()
            booking = Booking(
                id=uuid.uuid4().hex,
                admin_id=admin_id,
                start_utc=start_utc,
                end_utc=end_utc,
                requester_name=requester.name,
                requester_email=requester.email,
                timezone=timezone_name or admin["timezone"],
                status=BookingStatus.PENDING,
                title=title or f"Meeting with {requester.name}",
                notes=notes,
                video_provider=video_provider,
                created_at=now,
            )
            bookings_q.insert_booking(
                tx,
                booking.id,
                admin_id,
                start_utc,
                end_utc,
                booking.title,
                booking.requester_name,
                booking.requester_email,
                notes,
                video_provider.value if video_provider else None,
                booking.timezone,
                BookingStatus.PENDING.value,
                now,
            )

        logger.info(f"Created booking {booking.id} for admin {admin_id}")
        self._changed(admin_id)
        self.notifier.booking_requested(booking)
        return booking

    def get_booking(self, booking_id: str, admin_id: int) -> Booking:
        with self.db.transaction() as tx:
            row = bookings_q.get_booking(tx, booking_id, admin_id)
        if not row:
            raise NotFoundError(f"Booking {booking_id} not found")
        return Booking.from_row(row)

    def _transition(
        self,
        booking_id: str,
        admin_id: int,
        target: BookingStatus,
        video_link: Optional[str] = None,
        external_event_id: Optional[str] = None,
        rejection_reason: Optional[str] = None,
    ) -> Booking:
        with self.db.transaction(lock_key=admin_id) as tx:
            row = bookings_q.get_booking(tx, booking_id, admin_id)
            if not row:
                raise NotFoundError(f"Booking {booking_id} not found")
            current = BookingStatus(row["status"])
            ensure_transition(current, target)

            updated = bookings_q.transition_booking(
                tx,
                booking_id,
                current.value,
                target.value,
                self.clock(),
                video_link=video_link,
                external_event_id=external_event_id,
                rejection_reason=rejection_reason,
            )
            if not updated:
                raise InvalidStateError(
                    f"Booking {booking_id} changed state concurrently"
                )
            row = bookings_q.get_booking(tx, booking_id, admin_id)

        booking = Booking.from_row(row)  # type: ignore[arg-type]
        logger.info(f"Booking {booking_id}: {current.value} -> {target.value}")
        self._changed(admin_id)
        return booking

    def approve(
        self,
        booking_id: str,
        admin_id: int,
        video_link: Optional[str] = None,
        external_event_id: Optional[str] = None,
    ) -> Booking:
        booking = self._transition(
            booking_id,
            admin_id,
            BookingStatus.CONFIRMED,
            video_link=video_link,
            external_event_id=external_event_id,
        )
        self.notifier.booking_confirmed(booking)
        return booking

    def reject(self, booking_id: str, admin_id: int, reason: Optional[str] = None) -> Booking:
        booking = self._transition(
            booking_id, admin_id, BookingStatus.REJECTED, rejection_reason=reason
        )
        self.notifier.booking_rejected(booking)
        return booking

    def cancel(self, booking_id: str, admin_id: int) -> Booking:
        booking = self._transition(booking_id, admin_id, BookingStatus.CANCELLED)
        self.notifier.booking_cancelled(booking)
        return booking

    def list_bookings(
        self,
        admin_id: int,
        statuses: Optional[Sequence[Union[str, BookingStatus]]] = None,
        range_start: Optional[datetime] = None,
        range_end: Optional[datetime] = None,
    ) -> List[Booking]:
        status_values = None
        if statuses:
            status_values = [
                (s if isinstance(s, BookingStatus) else BookingStatus.from_string(s)).value
                for s in statuses
            ]
        with self.db.transaction() as tx:
            rows = bookings_q.list_bookings(tx, admin_id, status_values, range_start, range_end)
        return [Booking.from_row(row) for row in rows]
