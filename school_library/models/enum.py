# school_library/models/enum.py
from enum import Enum


class BookStatus(str, Enum):
    AVAILABLE = "AVAILABLE"
    BORROWED = "BORROWED"
    RESERVED = "RESERVED"
    DAMAGED = "DAMAGED"
    LOST = "LOST"


class MemberRole(str, Enum):
    STUDENT = "STUDENT"
    TEACHER = "TEACHER"
    STAFF = "STAFF"
    LIBRARIAN = "LIBRARIAN"


class MemberStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    SUSPENDED = "SUSPENDED"


class BorrowStatus(str, Enum):
    ISSUED = "ISSUED"        # book is out, due date not yet passed (or renewed)
    OVERDUE = "OVERDUE"      # set by the nightly sweep
    RETURNED = "RETURNED"
    LOST = "LOST"
    DAMAGED = "DAMAGED"


# Entries in these states still hold a copy
OPEN_BORROW_STATUSES = (BorrowStatus.ISSUED, BorrowStatus.OVERDUE)
