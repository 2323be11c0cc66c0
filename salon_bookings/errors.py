from enum import StrEnum


class ErrorCode(StrEnum):
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    INACTIVE_ENTITY = "INACTIVE_ENTITY"
    INVALID_VOUCHER = "INVALID_VOUCHER"
    EXPIRED = "EXPIRED"
    CONFLICT = "CONFLICT"
    PERSISTENCE_ERROR = "PERSISTENCE_ERROR"


class BookingError(Exception):
    """Base for every failure the core reports back to its callers."""

    code: ErrorCode = ErrorCode.VALIDATION_ERROR

    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.field = field


class ValidationError(BookingError):
    code = ErrorCode.VALIDATION_ERROR


class NotFoundError(BookingError):
    code = ErrorCode.NOT_FOUND

    @classmethod
    def for_entity(cls, entity: str, entity_id: object) -> "NotFoundError":
        return cls(f"{entity} not found: {entity_id}")


class InactiveEntityError(BookingError):
    code = ErrorCode.INACTIVE_ENTITY


class InvalidVoucherError(BookingError):
    code = ErrorCode.INVALID_VOUCHER


class ExpiredError(BookingError):
    code = ErrorCode.EXPIRED


class ConflictError(BookingError):
    code = ErrorCode.CONFLICT


class PersistenceError(BookingError):
    code = ErrorCode.PERSISTENCE_ERROR
