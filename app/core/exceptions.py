from fastapi import status

from app.core.enums import PaymentErrorCode


class ServiceError(Exception):
    """Base exception for service layer errors."""

    error_code: PaymentErrorCode = PaymentErrorCode.STORAGE

    def __init__(self, message: str, status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class AllocationError(ServiceError):
    """Allocation lines do not add up or do not fit the current balances."""

    error_code = PaymentErrorCode.VALIDATION

    def __init__(self, message: str) -> None:
        super().__init__(message, status.HTTP_400_BAD_REQUEST)


class StaleBalanceError(ServiceError):
    """Balance changed between the caller's read and the commit."""

    error_code = PaymentErrorCode.STALE_BALANCE

    def __init__(self, message: str = "Balance changed since it was last read; refresh and retry") -> None:
        super().__init__(message, status.HTTP_409_CONFLICT)


class FeeAssignmentNotFound(ServiceError):
    error_code = PaymentErrorCode.NOT_FOUND

    def __init__(self, message: str = "Student fee assignment not found") -> None:
        super().__init__(message, status.HTTP_404_NOT_FOUND)
