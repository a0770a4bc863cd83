from enum import Enum


class FeeRecurrence(str, Enum):
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    ONE_TIME = "one-time"


class FeeStatus(str, Enum):
    paid = "paid"
    partial = "partial"
    overdue = "overdue"
    due = "due"


class PaymentMode(str, Enum):
    CASH = "cash"
    UPI = "upi"
    CARD = "card"
    BANK_TRANSFER = "bank_transfer"
    CHEQUE = "cheque"


class AllocationStrategy(str, Enum):
    OVERDUE_FIRST = "overdue_first"
    PRIORITY_BASED = "priority_based"
    PROPORTIONAL = "proportional"


class ValidationIssueType(str, Enum):
    error = "error"
    warning = "warning"


class PaymentErrorCode(str, Enum):
    VALIDATION = "validation"
    STALE_BALANCE = "stale_balance"
    NOT_FOUND = "not_found"
    STORAGE = "storage"
