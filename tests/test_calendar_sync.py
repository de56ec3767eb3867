"""Tests for the calendar sync engine and the Google Calendar client wrapper."""

import time
from datetime import timedelta
from unittest.mock import MagicMock, patch

import httplib2
import pytest
from google.auth.exceptions import RefreshError
from googleapiclient.errors import HttpError

from booking_desk.db.queries import integrations as integrations_q
from booking_desk.engine.calendar_sync import GoogleCalendarClient, parse_event
from booking_desk.errors import CredentialError, SyncTokenExpired, UpstreamError

from conftest import MONDAY, NOW, seed_busy, seed_integration, timed_event


def at(hour: int, minute: int = 0, days: int = 0):
    return MONDAY.replace(hour=hour, minute=minute) + timedelta(days=days)


def event_ids(service, integration_id):
    return [i.external_event_id for i in service.sync.list_intervals(integration_id)]


def integration_row(service, integration_id):
    with service.db.transaction() as tx:
        return integrations_q.get_integration(tx, integration_id)


class TestFullSync:
    def test_pages_are_collected_and_filtered(self, service, calendar, integration_id):
        calendar.full_pages = [
            {
                "items": [
                    timed_event("evt-1", at(9), at(10), "Standup"),
                    {"id": "all-day", "status": "confirmed",
                     "start": {"date": "2030-01-07"}, "end": {"date": "2030-01-08"}},
                ],
            },
            {
                "items": [
                    timed_event("evt-2", at(11), at(12), transparency="transparent"),
                    timed_event("evt-3", at(13), at(14), status="cancelled"),
                    timed_event("evt-4", at(15), at(16), summary=""),
                ],
                "nextSyncToken": "sync-after-full",
            },
        ]

        result = service.sync.full_sync(integration_id)

        assert result.ok
        assert result.mode == "full"
        assert result.events_synced == 3
        assert [c["page_token"] for c in calendar.list_calls] == [None, "1"]
        assert calendar.list_calls[0]["sync_token"] is None
        assert calendar.list_calls[0]["time_min"] == "2029-10-03T12:00:00Z"
        assert calendar.list_calls[0]["time_max"] == "2030-04-01T12:00:00Z"

        intervals = {i.external_event_id: i for i in service.sync.list_intervals(integration_id)}
        assert sorted(intervals) == ["evt-1", "evt-2", "evt-4"]
        assert intervals["evt-1"].start_utc == at(9)
        assert intervals["evt-2"].is_busy is False
        assert intervals["evt-4"].title == "Untitled Event"

        row = integration_row(service, integration_id)
        assert row["sync_token"] == "sync-after-full"
        assert row["status"] == "active"
        assert row["last_sync_at"] == NOW

    def test_events_missing_from_window_are_removed(self, service, calendar, integration_id):
        seed_busy(service, integration_id, "gone", at(9), at(10))
        seed_busy(service, integration_id, "ancient", NOW - timedelta(days=200), NOW - timedelta(days=200, hours=-1))
        calendar.full_pages = [{"items": [timed_event("kept", at(11), at(12))], "nextSyncToken": "s"}]

        result = service.sync.full_sync(integration_id)

        assert result.events_removed == 1
        assert event_ids(service, integration_id) == ["ancient", "kept"]

    def test_upstream_failure_keeps_cache_and_token(self, service, calendar):
        integration_id = seed_integration(service, sync_token="sync-old")
        seed_busy(service, integration_id, "cached", at(9), at(10))
        calendar.fail_with = UpstreamError("Calendar list failed", status_code=500)

        result = service.sync.full_sync(integration_id)

        assert not result.ok
        assert result.status == "error"
        assert event_ids(service, integration_id) == ["cached"]
        row = integration_row(service, integration_id)
        assert row["sync_token"] == "sync-old"
        assert row["status"] == "error"
        assert "Calendar list failed" in row["last_error"]

    def test_unexpected_exception_is_recorded(self, service, calendar, integration_id):
        calendar.fail_with = RuntimeError("socket closed")

        result = service.sync.full_sync(integration_id)

        assert result.status == "error"
        assert isinstance(result.error, UpstreamError)
        assert integration_row(service, integration_id)["status"] == "error"

    def test_timeout_applies_nothing(self, service, calendar):
        integration_id = seed_integration(service, sync_token="sync-old")
        calendar.full_pages = [{"items": [timed_event("new", at(9), at(10))], "nextSyncToken": "s"}]

        result = service.sync.full_sync(integration_id, deadline=time.monotonic() - 1)

        assert result.status == "error"
        assert "timed out" in result.error.message
        assert event_ids(service, integration_id) == []
        assert integration_row(service, integration_id)["sync_token"] == "sync-old"

    def test_slot_cache_invalidated_after_sync(self, service, calendar, integration_id):
        service.blocks.create_block(1, 1, "09:00", "12:00", "UTC")
        before = service.slots.compute_slots(1, MONDAY, MONDAY + timedelta(days=1), "UTC")
        assert len(before) == 6

        calendar.full_pages = [{"items": [timed_event("evt", at(9), at(10))], "nextSyncToken": "s"}]
        service.sync.full_sync(integration_id)

        after = service.slots.compute_slots(1, MONDAY, MONDAY + timedelta(days=1), "UTC")
        assert len(after) == 4


class TestIncrementalSync:
    def test_without_token_falls_back_to_full(self, service, calendar, integration_id):
        result = service.sync.incremental_sync(integration_id)

        assert result.mode == "full"
        assert calendar.list_calls[0]["sync_token"] is None
        assert integration_row(service, integration_id)["sync_token"] == "sync-1"

    def test_applies_changes_and_deletes_cancelled(self, service, calendar):
        integration_id = seed_integration(service, sync_token="sync-1")
        seed_busy(service, integration_id, "moved", at(9), at(10))
        seed_busy(service, integration_id, "cancelled", at(11), at(12))
        seed_busy(service, integration_id, "now-all-day", at(13), at(14))
        calendar.delta_pages = [
            {
                "items": [
                    timed_event("moved", at(10), at(11)),
                    {"id": "cancelled", "status": "cancelled"},
                    {"id": "now-all-day", "status": "confirmed",
                     "start": {"date": "2030-01-07"}, "end": {"date": "2030-01-08"}},
                    timed_event("added", at(15), at(16)),
                ],
                "nextSyncToken": "sync-2",
            }
        ]

        result = service.sync.incremental_sync(integration_id)

        assert result.mode == "incremental"
        assert result.events_synced == 2
        assert result.events_removed == 2
        assert calendar.list_calls[0]["sync_token"] == "sync-1"
        intervals = {i.external_event_id: i for i in service.sync.list_intervals(integration_id)}
        assert sorted(intervals) == ["added", "moved"]
        assert intervals["moved"].start_utc == at(10)
        assert integration_row(service, integration_id)["sync_token"] == "sync-2"

    def test_replaying_a_delta_is_idempotent(self, service, calendar):
        integration_id = seed_integration(service, sync_token="sync-1")
        calendar.delta_pages = [
            {
                "items": [timed_event("evt", at(9), at(10)), {"id": "unknown", "status": "cancelled"}],
                "nextSyncToken": "sync-1",
            }
        ]

        service.sync.incremental_sync(integration_id)
        first = service.sync.list_intervals(integration_id)
        service.sync.incremental_sync(integration_id)
        second = service.sync.list_intervals(integration_id)

        assert [(i.external_event_id, i.start_utc, i.end_utc) for i in first] == [
            (i.external_event_id, i.start_utc, i.end_utc) for i in second
        ]
        assert len(second) == 1

    def test_expired_token_triggers_full_sync(self, service, calendar):
        integration_id = seed_integration(service, sync_token="stale")
        calendar.expired_tokens.add("stale")
        calendar.full_pages = [{"items": [timed_event("evt", at(9), at(10))], "nextSyncToken": "fresh"}]

        result = service.sync.incremental_sync(integration_id)

        assert result.ok
        assert result.mode == "full"
        assert [c["sync_token"] for c in calendar.list_calls] == ["stale", None]
        assert integration_row(service, integration_id)["sync_token"] == "fresh"

    def test_keeps_token_when_provider_sends_none(self, service, calendar):
        integration_id = seed_integration(service, sync_token="sync-1")
        calendar.delta_pages = [{"items": []}]

        service.sync.incremental_sync(integration_id)

        assert integration_row(service, integration_id)["sync_token"] == "sync-1"


def test_concurrent_sync_is_skipped(service, calendar, integration_id):
    with service.sync._in_flight.hold(integration_id), patch.object(
        service.sync, "_load", wraps=service.sync._load
    ) as load:
        result = service.sync.incremental_sync(integration_id)

    load.assert_not_called()
    assert result.status == "skipped"
    assert not result.ok
    assert calendar.list_calls == []


def test_changes_fetched_before_another_sync_landed_are_discarded(service, calendar):
    integration_id = seed_integration(service, sync_token="sync-1")
    calendar.delta_pages = [{"items": [timed_event("late", at(9), at(10))], "nextSyncToken": "sync-2"}]
    real_list_events = calendar.list_events

    def list_while_worker_syncs(*args, **kwargs):
        with service.db.transaction() as tx:
            integrations_q.mark_sync_success(
                tx, integration_id, "sync-from-worker", NOW + timedelta(minutes=1)
            )
        return real_list_events(*args, **kwargs)

    calendar.list_events = list_while_worker_syncs
    result = service.sync.incremental_sync(integration_id)

    assert result.status == "skipped"
    assert event_ids(service, integration_id) == []
    row = integration_row(service, integration_id)
    assert row["sync_token"] == "sync-from-worker"
    assert row["last_sync_at"] == NOW + timedelta(minutes=1)


def test_sync_uses_refreshed_access_token(service, calendar):
    integration_id = seed_integration(service, expires_in=timedelta(minutes=2))
    response = MagicMock(status_code=200)
    response.json.return_value = {"access_token": "refreshed", "expires_in": 3600}

    with patch("booking_desk.engine.oauth2.requests.post", return_value=response):
        result = service.sync.full_sync(integration_id)

    assert result.ok
    assert calendar.tokens == ["refreshed"]


def test_credential_failure_marks_error(service, calendar):
    integration_id = seed_integration(service, refresh_token=None, expires_in=timedelta(minutes=1))

    result = service.sync.full_sync(integration_id)

    assert result.error.code == "credential"
    assert calendar.list_calls == []
    assert integration_row(service, integration_id)["status"] == "error"


def test_cleanup_old_intervals(service, integration_id):
    seed_busy(service, integration_id, "old", NOW - timedelta(days=120), NOW - timedelta(days=120, hours=-1))
    seed_busy(service, integration_id, "recent", NOW - timedelta(days=10), NOW - timedelta(days=10, hours=-1))
    seed_busy(service, integration_id, "sabbatical", NOW - timedelta(days=120), NOW + timedelta(days=1))

    deleted = service.sync.cleanup_old_intervals()

    assert deleted == 1
    assert sorted(event_ids(service, integration_id)) == ["recent", "sabbatical"]


class TestParseEvent:
    def test_offset_times_become_utc(self):
        interval = parse_event(
            {
                "id": "evt",
                "summary": "Review",
                "start": {"dateTime": "2030-01-07T10:00:00+01:00"},
                "end": {"dateTime": "2030-01-07T11:00:00+01:00"},
            },
            "integration-1",
        )
        assert interval.start_utc == at(9)
        assert interval.end_utc == at(10)
        assert interval.is_busy is True
        assert interval.title == "Review"

    @pytest.mark.parametrize(
        "event",
        [
            {"id": "a", "start": {"date": "2030-01-07"}, "end": {"date": "2030-01-08"}},
            {"id": "b", "start": {"dateTime": "2030-01-07T10:00:00Z"}},
            {"start": {"dateTime": "2030-01-07T10:00:00Z"}, "end": {"dateTime": "2030-01-07T11:00:00Z"}},
            {"id": "c", "start": {"dateTime": "2030-01-07T10:00:00Z"}, "end": {"dateTime": "2030-01-07T10:00:00Z"}},
        ],
    )
    def test_unusable_events_are_skipped(self, event):
        assert parse_event(event, "integration-1") is None


def _http_error(status: int) -> HttpError:
    return HttpError(resp=MagicMock(status=status, reason="error"), content=b"error")


@pytest.fixture
def mock_calendar_service():
    return MagicMock()


class TestGoogleCalendarClient:
    def test_list_events_window(self, mock_calendar_service):
        client = GoogleCalendarClient("token")
        client.service = mock_calendar_service
        mock_calendar_service.events().list().execute.return_value = {"items": []}

        client.list_events("primary", time_min="2030-01-01T00:00:00Z", time_max="2030-02-01T00:00:00Z")

        mock_calendar_service.events().list.assert_called_with(
            calendarId="primary",
            singleEvents=True,
            maxResults=2500,
            timeMin="2030-01-01T00:00:00Z",
            timeMax="2030-02-01T00:00:00Z",
        )

    def test_list_events_delta(self, mock_calendar_service):
        client = GoogleCalendarClient("token")
        client.service = mock_calendar_service
        mock_calendar_service.events().list().execute.return_value = {"items": []}

        client.list_events("primary", page_token="p2", sync_token="s1")

        mock_calendar_service.events().list.assert_called_with(
            calendarId="primary",
            singleEvents=True,
            maxResults=2500,
            pageToken="p2",
            syncToken="s1",
        )

    def test_gone_sync_token(self, mock_calendar_service):
        client = GoogleCalendarClient("token")
        client.service = mock_calendar_service
        mock_calendar_service.events().list().execute.side_effect = _http_error(410)

        with pytest.raises(SyncTokenExpired):
            client.list_events("primary", sync_token="old")

    def test_other_errors_are_upstream(self, mock_calendar_service):
        client = GoogleCalendarClient("token")
        client.service = mock_calendar_service
        mock_calendar_service.events().list().execute.side_effect = _http_error(503)

        with pytest.raises(UpstreamError) as exc_info:
            client.list_events("primary", time_min="a", time_max="b")
        assert exc_info.value.status_code == 503
        assert not isinstance(exc_info.value, SyncTokenExpired)

    def test_create_event_with_conference_data(self, mock_calendar_service):
        client = GoogleCalendarClient("token")
        client.service = mock_calendar_service
        mock_calendar_service.events().insert().execute.return_value = {"id": "evt"}

        event = client.create_event("primary", {"summary": "Call"}, conference_data_version=1)

        assert event == {"id": "evt"}
        mock_calendar_service.events().insert.assert_called_with(
            calendarId="primary", body={"summary": "Call"}, conferenceDataVersion=1
        )

    def test_delete_tolerates_missing_event(self, mock_calendar_service):
        client = GoogleCalendarClient("token")
        client.service = mock_calendar_service
        mock_calendar_service.events().delete().execute.side_effect = _http_error(404)

        assert client.delete_event("primary", "evt") is False

    def test_delete_failure(self, mock_calendar_service):
        client = GoogleCalendarClient("token")
        client.service = mock_calendar_service
        mock_calendar_service.events().delete().execute.side_effect = _http_error(500)

        with pytest.raises(UpstreamError):
            client.delete_event("primary", "evt")

    def test_rejected_credentials(self, mock_calendar_service):
        client = GoogleCalendarClient("token")
        client.service = mock_calendar_service
        mock_calendar_service.events().list().execute.side_effect = RefreshError("invalid_grant")

        with pytest.raises(CredentialError):
            client.list_events("primary", time_min="a", time_max="b")

    def test_socket_timeout_is_upstream(self, mock_calendar_service):
        client = GoogleCalendarClient("token")
        client.service = mock_calendar_service
        mock_calendar_service.events().insert().execute.side_effect = TimeoutError("timed out")

        with pytest.raises(UpstreamError) as exc_info:
            client.create_event("primary", {"summary": "Call"})
        assert "timed out" in exc_info.value.message

    def test_connection_failure_while_building_service(self):
        client = GoogleCalendarClient("token")
        with patch(
            "booking_desk.engine.calendar_sync.build",
            side_effect=httplib2.ServerNotFoundError("Unable to find the server"),
        ):
            with pytest.raises(UpstreamError):
                client.delete_event("primary", "evt")
