"""Availability blocks and the slot computation engine."""

import logging
import threading
import time as time_module
import uuid
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Callable, Dict, Hashable, List, Optional, Tuple, Union

from booking_desk.db.queries import admins as admins_q
from booking_desk.db.queries import availability as availability_q
from booking_desk.db.queries import bookings as bookings_q
from booking_desk.db.queries import busy_intervals as busy_q
from booking_desk.db.types import DatabaseInterface
from booking_desk.errors import NotFoundError, ValidationError
from booking_desk.models import (
    BLOCKING_STATUSES,
    AvailabilityBlock,
    Slot,
    overlaps,
    parse_timezone,
    require_aware,
    utcnow,
)

logger = logging.getLogger(__name__)

DEFAULT_GRANULARITY_MINUTES = 30
# Longest range a single slot query may cover.
MAX_RANGE = timedelta(days=92)

ClockValue = Union[str, time]


def _python_weekday_to_block_day(value: date) -> int:
    """date.weekday() is Monday=0; blocks use Sunday=0."""
    return (value.weekday() + 1) % 7


def parse_clock(value: ClockValue, name: str) -> time:
    if isinstance(value, time):
        return value.replace(tzinfo=None)
    try:
        return time.fromisoformat(str(value).strip())
    except ValueError:
        raise ValidationError(f"{name} must be a time of day like '09:00', got '{value}'")


class SlotCache:
    """Short-lived in-process cache of computed slots.

    Entries are scoped to this process; each instance of the engine keeps its
    own and invalidates it on its own writes and syncs. Every invalidation bumps
    the admin's generation; a list computed from reads taken before the bump is
    not stored.
    """

    def __init__(self, ttl_seconds: float = 60):
        self.ttl_seconds = ttl_seconds
        self._lock = threading.Lock()
        self._entries: Dict[Hashable, Tuple[float, List[Slot]]] = {}
        self._generations: Dict[int, int] = {}

    def get(self, key: Tuple[Any, ...]) -> Optional[List[Slot]]:
        if self.ttl_seconds <= 0:
            return None
        with self._lock:
            entry = self._entries.get(key)
            if not entry:
                return None
            expires_at, slots = entry
            if expires_at <= time_module.monotonic():
                del self._entries[key]
                return None
            return list(slots)

    def generation(self, admin_id: int) -> int:
        with self._lock:
            return self._generations.get(admin_id, 0)

    def put(self, key: Tuple[Any, ...], slots: List[Slot], generation: int = 0) -> None:
        if self.ttl_seconds <= 0:
            return
        with self._lock:
            if self._generations.get(key[0], 0) != generation:
                return
            self._entries[key] = (time_module.monotonic() + self.ttl_seconds, list(slots))

    def invalidate_admin(self, admin_id: int) -> None:
        with self._lock:
            self._generations[admin_id] = self._generations.get(admin_id, 0) + 1
            stale = [key for key in self._entries if key[0] == admin_id]
            for key in stale:
                del self._entries[key]
        if stale:
            logger.debug(f"Invalidated {len(stale)} cached slot lists for admin {admin_id}")

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


class AvailabilityBlockService:
    """Create, edit and remove an admin's recurring weekly windows."""

    def __init__(
        self,
        db: DatabaseInterface,
        on_change: Optional[Callable[[int], None]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.on_change = on_change
        self.clock = clock

    @staticmethod
    def _validate(
        day_of_week: int, start_time: time, end_time: time, timezone_name: str
    ) -> None:
        if isinstance(day_of_week, bool) or not isinstance(day_of_week, int):
            raise ValidationError("day_of_week must be an integer (0=Sunday ... 6=Saturday)")
        if not 0 <= day_of_week <= 6:
            raise ValidationError("day_of_week must be between 0 (Sunday) and 6 (Saturday)")
        if start_time >= end_time:
            raise ValidationError("start_time must be before end_time")
        parse_timezone(timezone_name)

    def _changed(self, admin_id: int) -> None:
        if self.on_change:
            self.on_change(admin_id)

    def create_block(
        self,
        admin_id: int,
        day_of_week: int,
        start_time: ClockValue,
        end_time: ClockValue,
        timezone_name: Optional[str] = None,
        is_active: bool = True,
    ) -> AvailabilityBlock:
        start = parse_clock(start_time, "start_time")
        end = parse_clock(end_time, "end_time")

        with self.db.transaction() as tx:
            admin = admins_q.get_admin(tx, admin_id)
            if not admin:
                raise NotFoundError(f"Admin {admin_id} not found")
            zone_name = timezone_name or admin["timezone"]
            self._validate(day_of_week, start, end, zone_name)

            block = AvailabilityBlock(
                id=uuid.uuid4().hex,
                admin_id=admin_id,
                day_of_week=day_of_week,
                start_time=start,
                end_time=end,
                timezone=zone_name,
                is_active=is_active,
            )
            availability_q.insert_block(
                tx,
                block.id,
                admin_id,
                day_of_week,
                start.isoformat(),
                end.isoformat(),
                zone_name,
                is_active,
                self.clock(),
            )

        logger.info(f"Created availability block {block.id} for admin {admin_id}")
        self._changed(admin_id)
        return block

    def _get_owned(self, tx: Any, block_id: str, admin_id: int) -> AvailabilityBlock:
        row = availability_q.get_block(tx, block_id)
        if not row or row["admin_id"] != admin_id:
            raise NotFoundError(f"Availability block {block_id} not found")
        return AvailabilityBlock.from_row(row)

    def update_block(
        self,
        block_id: str,
        admin_id: int,
        day_of_week: Optional[int] = None,
        start_time: Optional[ClockValue] = None,
        end_time: Optional[ClockValue] = None,
        timezone_name: Optional[str] = None,
        is_active: Optional[bool] = None,
    ) -> AvailabilityBlock:
        with self.db.transaction() as tx:
            block = self._get_owned(tx, block_id, admin_id)
            if day_of_week is not None:
                block.day_of_week = day_of_week
            if start_time is not None:
                block.start_time = parse_clock(start_time, "start_time")
            if end_time is not None:
                block.end_time = parse_clock(end_time, "end_time")
            if timezone_name is not None:
                block.timezone = timezone_name
            if is_active is not None:
                block.is_active = is_active
            self._validate(block.day_of_week, block.start_time, block.end_time, block.timezone)

            availability_q.update_block(
                tx,
                block.id,
                block.day_of_week,
                block.start_time.isoformat(),
                block.end_time.isoformat(),
                block.timezone,
                block.is_active,
                self.clock(),
            )

        self._changed(admin_id)
        return block

    def delete_block(self, block_id: str, admin_id: int) -> None:
        with self.db.transaction() as tx:
            self._get_owned(tx, block_id, admin_id)
            availability_q.delete_block(tx, block_id)
        logger.info(f"Deleted availability block {block_id} for admin {admin_id}")
        self._changed(admin_id)

    def list_blocks(self, admin_id: int, include_inactive: bool = False) -> List[AvailabilityBlock]:
        with self.db.transaction() as tx:
            rows = availability_q.list_blocks(tx, admin_id, include_inactive)
        return [AvailabilityBlock.from_row(row) for row in rows]


def _format_display(value: datetime, zone: Any) -> str:
    return value.astimezone(zone).isoformat(timespec="seconds")


def generate_block_slots(
    block: AvailabilityBlock,
    range_start: datetime,
    range_end: datetime,
    granularity: timedelta,
) -> List[Tuple[datetime, datetime]]:
    """Candidate (start, end) UTC pairs for one block, clipped to the range.

    Dates are walked in the block's own zone so the local window maps to the
    right UTC instants on either side of a DST change.
    """
    zone = parse_timezone(block.timezone)
    first_day = range_start.astimezone(zone).date()
    last_day = range_end.astimezone(zone).date()

    candidates: List[Tuple[datetime, datetime]] = []
    day = first_day
    while day <= last_day:
        if _python_weekday_to_block_day(day) == block.day_of_week:
            window_start = datetime.combine(day, block.start_time, tzinfo=zone).astimezone(timezone.utc)
            window_end = datetime.combine(day, block.end_time, tzinfo=zone).astimezone(timezone.utc)
            slot_start = max(window_start, range_start)
            clipped_end = min(window_end, range_end)
            while slot_start + granularity <= clipped_end:
                candidates.append((slot_start, slot_start + granularity))
                slot_start += granularity
        day += timedelta(days=1)
    return candidates


class SlotEngine:
    """Computes bookable slots from blocks, cached busy intervals and bookings."""

    def __init__(
        self,
        db: DatabaseInterface,
        cache: Optional[SlotCache] = None,
        default_granularity_minutes: int = DEFAULT_GRANULARITY_MINUTES,
    ):
        self.db = db
        self.cache = cache
        self.default_granularity_minutes = default_granularity_minutes

    def compute_slots(
        self,
        admin_id: int,
        range_start: datetime,
        range_end: datetime,
        display_timezone: str,
        granularity_minutes: Optional[int] = None,
    ) -> List[Slot]:
        """Bookable slots in [range_start, range_end), ascending by start.

        A candidate is dropped when it half-open-overlaps any cached busy
        interval or any pending/confirmed booking of the admin. Slots from
        overlapping blocks are not merged, so the same start can appear twice.
        Display strings are for presentation only.
        """
        range_start = require_aware(range_start, "range_start")
        range_end = require_aware(range_end, "range_end")
        if range_start >= range_end:
            raise ValidationError("range_start must be before range_end")
        if range_end - range_start > MAX_RANGE:
            raise ValidationError(f"Range may not exceed {MAX_RANGE.days} days")
        display_zone = parse_timezone(display_timezone)
        minutes = (
            self.default_granularity_minutes if granularity_minutes is None else granularity_minutes
        )
        if minutes <= 0:
            raise ValidationError("granularity_minutes must be positive")

        cache_key = (admin_id, range_start, range_end, display_timezone, minutes)
        if self.cache:
            cached = self.cache.get(cache_key)
            if cached is not None:
                return cached
            generation = self.cache.generation(admin_id)

        with self.db.transaction() as tx:
            block_rows = availability_q.list_blocks(tx, admin_id)
            if block_rows:
                busy_rows = busy_q.list_busy_for_admin(tx, admin_id, range_start, range_end)
                booking_rows = bookings_q.list_overlapping(
                    tx,
                    admin_id,
                    range_start,
                    range_end,
                    [s.value for s in BLOCKING_STATUSES],
                )

        if not block_rows:
            logger.debug(f"No availability blocks for admin {admin_id}")
            return []

        taken = [(r["start_utc"], r["end_utc"]) for r in busy_rows]
        taken.extend((r["start_utc"], r["end_utc"]) for r in booking_rows)

        granularity = timedelta(minutes=minutes)
        slots: List[Slot] = []
        for row in block_rows:
            block = AvailabilityBlock.from_row(row)
            for start, end in generate_block_slots(block, range_start, range_end, granularity):
                if any(overlaps(start, end, t_start, t_end) for t_start, t_end in taken):
                    continue
                slots.append(
                    Slot(
                        start_utc=start,
                        end_utc=end,
                        display_start=_format_display(start, display_zone),
                        display_end=_format_display(end, display_zone),
                    )
                )

        slots.sort(key=lambda slot: slot.start_utc)
        logger.debug(f"Computed {len(slots)} slots for admin {admin_id}")

        if self.cache:
            self.cache.put(cache_key, slots, generation)
        return slots
