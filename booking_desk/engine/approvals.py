"""Approval and cancellation of bookings, including their calendar and video side effects."""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from booking_desk.engine.bookings import BookingGuard
from booking_desk.engine.calendar_sync import GoogleCalendarClient
from booking_desk.engine.oauth2 import CredentialVault
from booking_desk.engine.video import VideoLink, VideoService, meet_link_from_event
from booking_desk.errors import (
    CredentialError,
    InvalidStateError,
    NotFoundError,
    Result,
    UpstreamError,
)
from booking_desk.models import Booking, BookingStatus, VideoProvider

logger = logging.getLogger(__name__)


@dataclass
class ApprovalOutcome:
    booking: Booking
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"booking": self.booking.to_dict(), "warnings": list(self.warnings)}


def build_event_body(booking: Booking, zoom: Optional[VideoLink] = None) -> Dict[str, Any]:
    description_lines = [f"Booked by {booking.requester_name} <{booking.requester_email}>"]
    if booking.notes:
        description_lines.extend(["", booking.notes])
    if zoom:
        description_lines.extend(["", f"Join Zoom meeting: {zoom.meeting_url}"])
        if zoom.password:
            description_lines.append(f"Passcode: {zoom.password}")

    body: Dict[str, Any] = {
        "summary": booking.title or f"Meeting with {booking.requester_name}",
        "description": "\n".join(description_lines),
        "start": {"dateTime": booking.start_utc.isoformat(), "timeZone": booking.timezone},
        "end": {"dateTime": booking.end_utc.isoformat(), "timeZone": booking.timezone},
        "attendees": [
            {"email": booking.requester_email, "displayName": booking.requester_name}
        ],
    }
    if zoom:
        body["location"] = zoom.meeting_url
    if booking.video_provider == VideoProvider.GOOGLE_MEET:
        body["conferenceData"] = {
            "createRequest": {
                "requestId": booking.id,
                "conferenceSolutionKey": {"type": "hangoutsMeet"},
            }
        }
    return body


class ApprovalService:
    """Creates the calendar event and video link on approval.

    Every upstream step may fail without blocking the approval; failures are
    logged and returned as warnings. Only the guard's state check is fatal.
    """

    def __init__(
        self,
        guard: BookingGuard,
        vault: CredentialVault,
        video: VideoService,
        client_factory: Callable[[str], Any] = GoogleCalendarClient,
    ):
        self.guard = guard
        self.vault = vault
        self.video = video
        self.client_factory = client_factory

    def _calendar_client(self, admin_id: int) -> Result[Any]:
        integration = self.vault.get_integration_for_admin(admin_id)
        if not integration:
            return Result.degraded(NotFoundError("No calendar connected"))
        try:
            grant = self.vault.ensure_valid(integration.id)
        except (CredentialError, UpstreamError) as e:
            return Result.degraded(e)
        return Result.success((self.client_factory(grant.access_token), grant.calendar_id))

    def approve_booking(self, booking_id: str, admin_id: int) -> ApprovalOutcome:
        booking = self.guard.get_booking(booking_id, admin_id)
        if booking.status != BookingStatus.PENDING:
            raise InvalidStateError(
                f"Booking cannot move from {booking.status.value} to confirmed"
            )

        warnings: List[str] = []
        zoom: Optional[VideoLink] = None
        if booking.video_provider == VideoProvider.ZOOM:
            duration = int((booking.end_utc - booking.start_utc).total_seconds() // 60)
            zoom_result = self.video.create_zoom_link(
                booking.title or "Meeting", booking.start_utc, duration, booking.timezone
            )
            if zoom_result.ok:
                zoom = zoom_result.value
            else:
                warnings.append(f"Zoom link not created: {zoom_result.error.message}")  # type: ignore[union-attr]

        video_link = zoom.meeting_url if zoom else None
        event_id: Optional[str] = None
        created_in: Optional[tuple] = None

        client_result = self._calendar_client(admin_id)
        if client_result.ok:
            client, calendar_id = client_result.value  # type: ignore[misc]
            with_meet = booking.video_provider == VideoProvider.GOOGLE_MEET
            try:
                event = client.create_event(
                    calendar_id,
                    build_event_body(booking, zoom),
                    conference_data_version=1 if with_meet else 0,
                )
                event_id = event.get("id")
                created_in = (client, calendar_id)
                if with_meet:
                    meet = meet_link_from_event(event)
                    if meet:
                        video_link = meet.meeting_url
                    else:
                        warnings.append("Google Meet link was not generated")
            except (CredentialError, UpstreamError) as e:
                logger.warning(f"Calendar event for booking {booking_id} not created: {e.message}")
                warnings.append(f"Calendar event not created: {e.message}")
        else:
            error = client_result.error
            if isinstance(error, NotFoundError):
                if booking.video_provider == VideoProvider.GOOGLE_MEET:
                    warnings.append("Google Meet requires a connected calendar")
            else:
                logger.warning(f"Calendar unavailable for booking {booking_id}: {error.message}")  # type: ignore[union-attr]
                warnings.append(f"Calendar event not created: {error.message}")  # type: ignore[union-attr]

        try:
            confirmed = self.guard.approve(
                booking_id, admin_id, video_link=video_link, external_event_id=event_id
            )
        except NotFoundError:
            self._undo(booking_id, created_in, event_id, zoom)
            raise

        for warning in warnings:
            logger.warning(f"Booking {booking_id} approved with degraded result: {warning}")
        return ApprovalOutcome(booking=confirmed, warnings=warnings)

    def _undo(
        self,
        booking_id: str,
        created_in: Optional[tuple],
        event_id: Optional[str],
        zoom: Optional[VideoLink],
    ) -> None:
        if created_in and event_id:
            client, calendar_id = created_in
            try:
                client.delete_event(calendar_id, event_id)
            except (CredentialError, UpstreamError) as e:
                logger.error(
                    f"Orphaned calendar event {event_id} for booking {booking_id}: {e.message}"
                )
        if zoom and zoom.meeting_id:
            self.video.delete_zoom_meeting(zoom.meeting_id)

    def reject_booking(
        self, booking_id: str, admin_id: int, reason: Optional[str] = None
    ) -> ApprovalOutcome:
        return ApprovalOutcome(booking=self.guard.reject(booking_id, admin_id, reason))

    def cancel_booking(self, booking_id: str, admin_id: int) -> ApprovalOutcome:
        """Cancel a confirmed booking and remove its calendar event."""
        cancelled = self.guard.cancel(booking_id, admin_id)
        warnings: List[str] = []
        if cancelled.external_event_id:
            client_result = self._calendar_client(admin_id)
            if client_result.ok:
                client, calendar_id = client_result.value  # type: ignore[misc]
                try:
                    client.delete_event(calendar_id, cancelled.external_event_id)
                except (CredentialError, UpstreamError) as e:
                    warnings.append(f"Calendar event not deleted: {e.message}")
            else:
                warnings.append(
                    f"Calendar event not deleted: {client_result.error.message}"  # type: ignore[union-attr]
                )
        for warning in warnings:
            logger.warning(f"Booking {booking_id} cancelled with degraded result: {warning}")
        return ApprovalOutcome(booking=cancelled, warnings=warnings)
