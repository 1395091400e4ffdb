"""Error codes and request-level errors.

Inventory and check-in outcomes are returned as typed results and never
raised; DomainError is for failures the HTTP layer turns into a status
code.
"""

from dataclasses import dataclass
from enum import Enum


class ErrorCode(Enum):
    """Error codes shared by results and raised errors."""

    SOLD_OUT = "sold_out"
    OVER_LIMIT = "over_limit"
    SALE_CLOSED = "sale_closed"
    VALIDATION_ERROR = "validation_error"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    PROCESSOR_ERROR = "processor_error"
    INTERNAL_ERROR = "internal_error"


HTTP_STATUS = {
    ErrorCode.SOLD_OUT: 409,
    ErrorCode.OVER_LIMIT: 400,
    ErrorCode.SALE_CLOSED: 400,
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.UNAUTHORIZED: 401,
    ErrorCode.FORBIDDEN: 403,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.PROCESSOR_ERROR: 502,
    ErrorCode.INTERNAL_ERROR: 500,
}


@dataclass(eq=False)
class DomainError(Exception):
    """Base error with code and user-safe message."""

    code: ErrorCode
    message: str

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"

    @property
    def http_status(self) -> int:
        return HTTP_STATUS[self.code]


class ValidationError(DomainError):
    def __init__(self, message: str) -> None:
        super().__init__(code=ErrorCode.VALIDATION_ERROR, message=message)


class NotFoundError(DomainError):
    def __init__(self, what: str) -> None:
        super().__init__(code=ErrorCode.NOT_FOUND, message=f"{what} not found")


class ForbiddenError(DomainError):
    def __init__(self, message: str = "Not the owner") -> None:
        super().__init__(code=ErrorCode.FORBIDDEN, message=message)


class ProcessorError(DomainError):
    """Payment processor unreachable or rejected the request."""

    def __init__(self, message: str) -> None:
        super().__init__(code=ErrorCode.PROCESSOR_ERROR, message=message)
