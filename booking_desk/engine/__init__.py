from booking_desk.engine.availability import AvailabilityBlockService, SlotCache, SlotEngine
from booking_desk.engine.bookings import BookingGuard, BookingNotifier
from booking_desk.engine.calendar_sync import CalendarSync, GoogleCalendarClient, SyncResult
from booking_desk.engine.crypto import TokenCipher
from booking_desk.engine.database import PostgresDatabase, SqliteDatabase, create_database
from booking_desk.engine.oauth2 import AccessGrant, CredentialVault

__all__ = [
    "AccessGrant",
    "AvailabilityBlockService",
    "BookingGuard",
    "BookingNotifier",
    "CalendarSync",
    "CredentialVault",
    "GoogleCalendarClient",
    "PostgresDatabase",
    "SlotCache",
    "SlotEngine",
    "SqliteDatabase",
    "SyncResult",
    "TokenCipher",
    "create_database",
]
