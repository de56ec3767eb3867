from booking_desk.db.types import DatabaseInterface, Transaction

__all__ = ["DatabaseInterface", "Transaction"]
