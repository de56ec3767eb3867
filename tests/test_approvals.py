"""Tests for booking approval, rejection and cancellation side effects."""

from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest
from google.auth.exceptions import RefreshError

from booking_desk.engine.approvals import build_event_body
from booking_desk.engine.calendar_sync import GoogleCalendarClient
from booking_desk.engine.video import VideoLink
from booking_desk.errors import InvalidStateError, UpstreamError
from booking_desk.models import BookingStatus, Requester, VideoProvider

from conftest import MONDAY, seed_integration

GUEST = Requester(name="Grace Hopper", email="grace@example.com")
START = MONDAY.replace(hour=10)
END = START + timedelta(minutes=45)


def request(service, provider=None, notes=None):
    return service.guard.request_booking(
        1, START, END, GUEST, notes=notes, video_provider=provider
    )


class TestApproveBooking:
    def test_meet_link_comes_from_created_event(self, service, calendar, integration_id):
        calendar.create_response = {
            "id": "evt-meet",
            "hangoutLink": "https://meet.google.com/abc-defg-hij",
            "conferenceData": {"conferenceId": "abc-defg-hij"},
        }
        booking = request(service, "google-meet")

        outcome = service.approve_booking(booking.id, 1)

        assert outcome.warnings == []
        assert outcome.booking.status == BookingStatus.CONFIRMED
        assert outcome.booking.video_link == "https://meet.google.com/abc-defg-hij"
        assert outcome.booking.external_event_id == "evt-meet"

        created = calendar.created[0]
        assert created["calendar_id"] == "primary"
        assert created["conference_data_version"] == 1
        request_body = created["body"]["conferenceData"]["createRequest"]
        assert request_body["requestId"] == booking.id
        assert request_body["conferenceSolutionKey"] == {"type": "hangoutsMeet"}
        assert created["body"]["attendees"] == [
            {"email": "grace@example.com", "displayName": "Grace Hopper"}
        ]

    def test_meet_without_link_warns(self, service, calendar, integration_id):
        booking = request(service, "google-meet")

        outcome = service.approve_booking(booking.id, 1)

        assert outcome.booking.status == BookingStatus.CONFIRMED
        assert outcome.booking.video_link is None
        assert outcome.warnings == ["Google Meet link was not generated"]

    def test_zoom_link_added_to_event(self, service, calendar, zoom_client, integration_id):
        zoom_client.create_meeting.return_value = {
            "id": 123,
            "join_url": "https://zoom.us/j/123",
            "password": "pw",
        }
        booking = request(service, "zoom")

        outcome = service.approve_booking(booking.id, 1)

        assert outcome.warnings == []
        assert outcome.booking.video_link == "https://zoom.us/j/123"
        zoom_client.create_meeting.assert_called_once_with(
            "Meeting with Grace Hopper", START, 45, "UTC"
        )
        body = calendar.created[0]["body"]
        assert calendar.created[0]["conference_data_version"] == 0
        assert body["location"] == "https://zoom.us/j/123"
        assert "Passcode: pw" in body["description"]
        assert "conferenceData" not in body

    def test_zoom_failure_degrades(self, service, calendar, zoom_client, integration_id):
        zoom_client.create_meeting.side_effect = UpstreamError("Zoom meeting creation failed: 500")
        booking = request(service, "zoom")

        outcome = service.approve_booking(booking.id, 1)

        assert outcome.booking.status == BookingStatus.CONFIRMED
        assert outcome.booking.video_link is None
        assert outcome.booking.external_event_id == "evt-created"
        assert outcome.warnings == ["Zoom link not created: Zoom meeting creation failed: 500"]

    def test_calendar_failure_degrades(self, service, calendar, integration_id):
        calendar.create_error = UpstreamError("Calendar event creation failed", status_code=500)
        booking = request(service)

        outcome = service.approve_booking(booking.id, 1)

        assert outcome.booking.status == BookingStatus.CONFIRMED
        assert outcome.booking.external_event_id is None
        assert outcome.warnings == ["Calendar event not created: Calendar event creation failed"]

    def test_calendar_timeout_degrades(self, service, calendar, integration_id):
        service.approvals.client_factory = GoogleCalendarClient
        booking = request(service)

        with patch(
            "booking_desk.engine.calendar_sync.build", side_effect=TimeoutError("timed out")
        ):
            outcome = service.approve_booking(booking.id, 1)

        assert outcome.booking.status == BookingStatus.CONFIRMED
        assert outcome.booking.external_event_id is None
        assert outcome.warnings == ["Calendar event not created: Calendar event creation failed: timed out"]

    def test_zoom_meeting_without_join_url_degrades(self, service, calendar, zoom_client, integration_id):
        zoom_client.create_meeting.return_value = {"id": 9}
        booking = request(service, "zoom")

        outcome = service.approve_booking(booking.id, 1)

        assert outcome.booking.status == BookingStatus.CONFIRMED
        assert outcome.booking.video_link is None
        assert outcome.warnings == ["Zoom link not created: Zoom meeting has no join URL"]

    def test_without_calendar(self, service, calendar):
        plain = request(service)
        outcome = service.approve_booking(plain.id, 1)
        assert outcome.warnings == []
        assert calendar.created == []

        service.guard.cancel(plain.id, 1)
        meet = request(service, "google-meet")
        outcome = service.approve_booking(meet.id, 1)
        assert outcome.booking.status == BookingStatus.CONFIRMED
        assert outcome.warnings == ["Google Meet requires a connected calendar"]

    def test_credential_failure_degrades_and_marks_error(self, service, calendar):
        integration_id = seed_integration(service, refresh_token=None, expires_in=timedelta(minutes=1))
        booking = request(service)

        outcome = service.approve_booking(booking.id, 1)

        assert outcome.booking.status == BookingStatus.CONFIRMED
        assert len(outcome.warnings) == 1
        assert outcome.warnings[0].startswith("Calendar event not created")
        assert calendar.created == []
        assert service.calendar_status(1).status.value == "error"
        assert service.calendar_status(1).id == integration_id

    def test_non_pending_booking_has_no_side_effects(self, service, calendar, zoom_client, integration_id):
        booking = request(service, "zoom")
        service.reject_booking(booking.id, 1, "No")

        with pytest.raises(InvalidStateError):
            service.approve_booking(booking.id, 1)

        zoom_client.create_meeting.assert_not_called()
        assert calendar.created == []

    def test_lost_race_removes_created_event_and_meeting(
        self, service, calendar, zoom_client, integration_id
    ):
        zoom_client.create_meeting.return_value = {"id": 9, "join_url": "https://zoom.us/j/9"}
        booking = request(service, "zoom")

        with patch.object(service.guard, "approve", side_effect=InvalidStateError("changed")):
            with pytest.raises(InvalidStateError):
                service.approve_booking(booking.id, 1)

        assert calendar.deleted == ["evt-created"]
        zoom_client.delete_meeting.assert_called_once_with("9")
        assert service.guard.get_booking(booking.id, 1).status == BookingStatus.PENDING


class TestRejectAndCancel:
    def test_reject(self, service, calendar, integration_id):
        booking = request(service)
        outcome = service.reject_booking(booking.id, 1, "Fully booked")
        assert outcome.booking.status == BookingStatus.REJECTED
        assert outcome.booking.rejection_reason == "Fully booked"
        assert calendar.created == []

    def test_cancel_deletes_calendar_event(self, service, calendar, integration_id):
        booking = request(service)
        service.approve_booking(booking.id, 1)

        outcome = service.cancel_booking(booking.id, 1)

        assert outcome.booking.status == BookingStatus.CANCELLED
        assert outcome.warnings == []
        assert calendar.deleted == ["evt-created"]

    def test_cancel_after_disconnect_warns(self, service, calendar, integration_id):
        booking = request(service)
        service.approve_booking(booking.id, 1)
        service.disconnect_calendar(1)

        outcome = service.cancel_booking(booking.id, 1)

        assert outcome.booking.status == BookingStatus.CANCELLED
        assert outcome.warnings == ["Calendar event not deleted: No calendar connected"]
        assert calendar.deleted == []

    def test_cancel_with_rejected_credentials_warns(self, service, calendar, integration_id):
        booking = request(service)
        service.approve_booking(booking.id, 1)
        google = MagicMock()
        google.events().delete().execute.side_effect = RefreshError("invalid_grant")
        service.approvals.client_factory = GoogleCalendarClient

        with patch("booking_desk.engine.calendar_sync.build", return_value=google):
            outcome = service.cancel_booking(booking.id, 1)

        assert outcome.booking.status == BookingStatus.CANCELLED
        assert outcome.warnings == [
            "Calendar event not deleted: Calendar credentials rejected: invalid_grant"
        ]

    def test_cancel_pending_is_refused(self, service, integration_id):
        booking = request(service)
        with pytest.raises(InvalidStateError):
            service.cancel_booking(booking.id, 1)


def test_event_body_description(service):
    booking = request(service, notes="Discuss the roadmap")
    zoom = VideoLink(provider=VideoProvider.ZOOM, meeting_url="https://zoom.us/j/1", password="x")

    body = build_event_body(booking, zoom)

    assert body["summary"] == "Meeting with Grace Hopper"
    assert body["start"] == {"dateTime": START.isoformat(), "timeZone": "UTC"}
    assert body["description"].splitlines() == [
        "Booked by Grace Hopper <grace@example.com>",
        "",
        "Discuss the roadmap",
        "",
        "Join Zoom meeting: https://zoom.us/j/1",
        "Passcode: x",
    ]
