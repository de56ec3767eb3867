"""Video conferencing links for approved bookings."""

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

import requests  # type: ignore

from booking_desk.config import ZoomConfig
from booking_desk.errors import Result, UpstreamError
from booking_desk.models import VideoProvider

logger = logging.getLogger(__name__)

ZOOM_TOKEN_URI = "https://zoom.us/oauth/token"
ZOOM_API_BASE = "https://api.zoom.us/v2"
# Treat the Zoom token as expired this long before it actually is.
TOKEN_EXPIRY_MARGIN = 300
REQUEST_TIMEOUT = 30


@dataclass
class VideoLink:
    provider: VideoProvider
    meeting_url: str
    meeting_id: Optional[str] = None
    password: Optional[str] = None


class ZoomClient:
    """Server-to-server OAuth client for the Zoom meetings API."""

    def __init__(self, config: ZoomConfig):
        self.config = config
        self._access_token: Optional[str] = None
        self._expires_at = 0.0

    def _get_access_token(self) -> str:
        if self._access_token and self._expires_at > time.time():
            return self._access_token

        try:
            response = requests.post(
                ZOOM_TOKEN_URI,
                params={
                    "grant_type": "account_credentials",
                    "account_id": self.config.account_id,
                },
                auth=(self.config.client_id, self.config.client_secret),
                timeout=REQUEST_TIMEOUT,
            )
        except requests.RequestException as e:
            raise UpstreamError(f"Zoom token endpoint unreachable: {e}")

        if response.status_code != 200:
            logger.error(f"Failed to obtain Zoom access token: {response.status_code}")
            raise UpstreamError(
                "Failed to obtain Zoom access token", status_code=response.status_code
            )

        try:
            token_data = response.json()
            self._access_token = token_data["access_token"]
        except (ValueError, KeyError, TypeError):
            raise UpstreamError("Zoom token response carried no access token")
        self._expires_at = (
            time.time() + int(token_data.get("expires_in", 3600)) - TOKEN_EXPIRY_MARGIN
        )
        return self._access_token  # type: ignore[return-value]

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self._get_access_token()}"}

    def create_meeting(
        self,
        topic: str,
        start_time: datetime,
        duration_minutes: int,
        timezone: str = "UTC",
    ) -> Dict[str, Any]:
        try:
            response = requests.post(
                f"{ZOOM_API_BASE}/users/me/meetings",
                json={
                    "topic": topic,
                    "type": 2,
                    "start_time": start_time.strftime("%Y-%m-%dT%H:%M:%SZ"),
                    "duration": duration_minutes,
                    "timezone": timezone,
                    "settings": {
                        "host_video": True,
                        "participant_video": True,
                        "waiting_room": False,
                    },
                },
                headers=self._headers(),
                timeout=REQUEST_TIMEOUT,
            )
        except requests.RequestException as e:
            raise UpstreamError(f"Zoom API unreachable: {e}")

        if response.status_code not in (200, 201):
            raise UpstreamError(
                f"Zoom meeting creation failed: {response.status_code} - {response.text}",
                status_code=response.status_code,
            )
        try:
            meeting = response.json()
        except ValueError:
            raise UpstreamError("Zoom meeting response was not JSON")
        if not isinstance(meeting, dict) or not meeting.get("join_url"):
            raise UpstreamError("Zoom meeting response carried no join URL")
        logger.info(f"Created Zoom meeting {meeting.get('id')}")
        return meeting

    def delete_meeting(self, meeting_id: str) -> bool:
        """Returns False when the meeting was already gone."""
        try:
            response = requests.delete(
                f"{ZOOM_API_BASE}/meetings/{meeting_id}",
                headers=self._headers(),
                timeout=REQUEST_TIMEOUT,
            )
        except requests.RequestException as e:
            raise UpstreamError(f"Zoom API unreachable: {e}")

        if response.status_code == 404:
            logger.info(f"Zoom meeting {meeting_id} already deleted")
            return False
        if response.status_code not in (200, 204):
            raise UpstreamError(
                f"Zoom meeting deletion failed: {response.status_code}",
                status_code=response.status_code,
            )
        return True


def meet_link_from_event(event: Dict[str, Any]) -> Optional[VideoLink]:
    """Pull the Meet URL Google attached to a created event, if any."""
    conference = event.get("conferenceData") or {}
    url = event.get("hangoutLink")
    if not url:
        for entry in conference.get("entryPoints") or []:
            if entry.get("entryPointType") == "video" and entry.get("uri"):
                url = entry["uri"]
                break
    if not url:
        return None
    return VideoLink(
        provider=VideoProvider.GOOGLE_MEET,
        meeting_url=url,
        meeting_id=conference.get("conferenceId"),
    )


class VideoService:
    """Link generation that degrades instead of failing the caller."""

    def __init__(self, zoom_config: Optional[ZoomConfig] = None, zoom_client: Any = None):
        self.zoom = zoom_client or (ZoomClient(zoom_config) if zoom_config else None)

    def create_zoom_link(
        self, topic: str, start_time: datetime, duration_minutes: int, timezone: str = "UTC"
    ) -> Result[VideoLink]:
        if not self.zoom:
            return Result.degraded(UpstreamError("Zoom is not configured"))
        try:
            meeting = self.zoom.create_meeting(topic, start_time, duration_minutes, timezone)
        except UpstreamError as e:
            logger.warning(f"Zoom link generation failed: {e.message}")
            return Result.degraded(e)

        join_url = meeting.get("join_url") if isinstance(meeting, dict) else None
        if not join_url:
            logger.warning("Zoom meeting created without a join URL")
            return Result.degraded(UpstreamError("Zoom meeting has no join URL"))
        return Result.success(
            VideoLink(
                provider=VideoProvider.ZOOM,
                meeting_url=join_url,
                meeting_id=str(meeting.get("id")) if meeting.get("id") else None,
                password=meeting.get("password"),
            )
        )

    def delete_zoom_meeting(self, meeting_id: str) -> Result[bool]:
        if not self.zoom:
            return Result.degraded(UpstreamError("Zoom is not configured"))
        try:
            return Result.success(self.zoom.delete_meeting(meeting_id))
        except UpstreamError as e:
            logger.warning(f"Zoom meeting {meeting_id} could not be deleted: {e.message}")
            return Result.degraded(e)
