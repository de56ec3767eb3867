"""Domain records for availability, calendar sync and bookings.

All instants are timezone-aware UTC datetimes. Local wall-clock times only
appear on availability blocks (``start_time``/``end_time``) and in the
presentation strings attached to a ``Slot``.
"""

from dataclasses import dataclass
from datetime import datetime, time, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from booking_desk.errors import InvalidStateError, ValidationError


class BookingStatus(Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"

    @classmethod
    def from_string(cls, value: str) -> "BookingStatus":
        try:
            return cls(value.lower().strip())
        except ValueError:
            raise ValidationError(
                f"Invalid booking status '{value}'. Must be one of: "
                + ", ".join(s.value for s in cls)
            )

    def can_transition(self, target: "BookingStatus") -> bool:
        return (self, target) in BOOKING_TRANSITIONS


BOOKING_TRANSITIONS: FrozenSet[Tuple[BookingStatus, BookingStatus]] = frozenset(
    {
        (BookingStatus.PENDING, BookingStatus.CONFIRMED),
        (BookingStatus.PENDING, BookingStatus.REJECTED),
        (BookingStatus.CONFIRMED, BookingStatus.CANCELLED),
    }
)

# Statuses that hold a time range on the admin's calendar.
BLOCKING_STATUSES = (BookingStatus.PENDING, BookingStatus.CONFIRMED)


def ensure_transition(current: BookingStatus, target: BookingStatus) -> None:
    if not current.can_transition(target):
        raise InvalidStateError(
            f"Booking cannot move from {current.value} to {target.value}"
        )


class IntegrationStatus(Enum):
    DISCONNECTED = "disconnected"
    ACTIVE = "active"
    ERROR = "error"


class VideoProvider(Enum):
    GOOGLE_MEET = "google-meet"
    ZOOM = "zoom"

    @classmethod
    def from_string(cls, value: str) -> "VideoProvider":
        try:
            return cls(value.lower().strip())
        except ValueError:
            raise ValidationError(
                f"Invalid video provider '{value}'. Must be 'google-meet' or 'zoom'."
            )


GOOGLE_CALENDAR_PROVIDER = "google-calendar"


def overlaps(
    start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime
) -> bool:
    """Half-open overlap: touching endpoints do not count."""
    return start_a < end_b and end_a > start_b


def _parse_clock(value: Any) -> time:
    if isinstance(value, time):
        return value
    return time.fromisoformat(str(value))


@dataclass
class Admin:
    id: int
    timezone: str

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Admin":
        return cls(id=row["id"], timezone=row["timezone"])


@dataclass
class AvailabilityBlock:
    id: str
    admin_id: int
    day_of_week: int  # 0=Sunday ... 6=Saturday
    start_time: time
    end_time: time
    timezone: str
    is_active: bool = True

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "AvailabilityBlock":
        return cls(
            id=row["id"],
            admin_id=row["admin_id"],
            day_of_week=row["day_of_week"],
            start_time=_parse_clock(row["start_time"]),
            end_time=_parse_clock(row["end_time"]),
            timezone=row["timezone"],
            is_active=bool(row["is_active"]),
        )


@dataclass
class CalendarIntegration:
    id: str
    admin_id: int
    provider: str
    access_token: str  # encrypted
    refresh_token: Optional[str]  # encrypted
    token_expires_at: Optional[datetime]
    calendar_id: str = "primary"
    sync_token: Optional[str] = None
    last_sync_at: Optional[datetime] = None
    status: IntegrationStatus = IntegrationStatus.DISCONNECTED
    last_error: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "CalendarIntegration":
        return cls(
            id=row["id"],
            admin_id=row["admin_id"],
            provider=row["provider"],
            access_token=row["access_token"],
            refresh_token=row.get("refresh_token"),
            token_expires_at=row.get("token_expires_at"),
            calendar_id=row.get("calendar_id") or "primary",
            sync_token=row.get("sync_token"),
            last_sync_at=row.get("last_sync_at"),
            status=IntegrationStatus(row["status"]),
            last_error=row.get("last_error"),
        )


@dataclass
class BusyInterval:
    integration_id: str
    external_event_id: str
    start_utc: datetime
    end_utc: datetime
    title: Optional[str] = None
    is_busy: bool = True
    synced_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "BusyInterval":
        return cls(
            integration_id=row["integration_id"],
            external_event_id=row["external_event_id"],
            start_utc=row["start_utc"],
            end_utc=row["end_utc"],
            title=row.get("title"),
            is_busy=bool(row["is_busy"]),
            synced_at=row.get("synced_at"),
        )


@dataclass
class Requester:
    name: str
    email: str


@dataclass
class Booking:
    id: str
    admin_id: int
    start_utc: datetime
    end_utc: datetime
    requester_name: str
    requester_email: str
    timezone: str
    status: BookingStatus = BookingStatus.PENDING
    title: Optional[str] = None
    notes: Optional[str] = None
    video_provider: Optional[VideoProvider] = None
    video_link: Optional[str] = None
    external_event_id: Optional[str] = None
    rejection_reason: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Booking":
        provider = row.get("video_provider")
        return cls(
            id=row["id"],
            admin_id=row["admin_id"],
            start_utc=row["start_utc"],
            end_utc=row["end_utc"],
            requester_name=row["requester_name"],
            requester_email=row["requester_email"],
            timezone=row["timezone"],
            status=BookingStatus(row["status"]),
            title=row.get("title"),
            notes=row.get("notes"),
            video_provider=VideoProvider(provider) if provider else None,
            video_link=row.get("video_link"),
            external_event_id=row.get("external_event_id"),
            rejection_reason=row.get("rejection_reason"),
            created_at=row.get("created_at"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "admin_id": self.admin_id,
            "start_time": self.start_utc.isoformat(),
            "end_time": self.end_utc.isoformat(),
            "requester_name": self.requester_name,
            "requester_email": self.requester_email,
            "timezone": self.timezone,
            "status": self.status.value,
            "title": self.title,
            "notes": self.notes,
            "video_provider": self.video_provider.value if self.video_provider else None,
            "video_link": self.video_link,
            "external_event_id": self.external_event_id,
            "rejection_reason": self.rejection_reason,
        }


@dataclass(frozen=True)
class Slot:
    start_utc: datetime
    end_utc: datetime
    display_start: str
    display_end: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "start_time": self.start_utc.isoformat(),
            "end_time": self.end_utc.isoformat(),
            "display_start_time": self.display_start,
            "display_end_time": self.display_end,
        }


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timezone(name: Optional[str]) -> ZoneInfo:
    """Resolve an IANA zone name, raising ValidationError for unknown or malformed names."""
    if not name:
        raise ValidationError("Timezone is required")
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValidationError(
            f"Invalid timezone '{name}'. Must be a valid IANA timezone (e.g., 'America/Los_Angeles')"
        )


def require_aware(value: datetime, name: str) -> datetime:
    if value.tzinfo is None or value.utcoffset() is None:
        raise ValidationError(f"{name} must include a UTC offset")
    return value.astimezone(timezone.utc)
