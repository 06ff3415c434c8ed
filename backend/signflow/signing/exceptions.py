from typing import Optional


class SigningError(Exception):
    """Base class for orchestrator errors.

    ``http_status`` is the status code a transport layer should map the error to.
    """

    http_status = 500

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code

    def to_dict(self) -> dict:
        return {"error": type(self).__name__, "code": self.code, "message": self.message}


class ValidationError(SigningError):
    http_status = 422


class RequestNotFound(SigningError):
    http_status = 404


class StateConflictError(SigningError):
    http_status = 409

    REQUEST_TERMINAL = "REQUEST_TERMINAL"
    REQUEST_NOT_SENT = "REQUEST_NOT_SENT"
    REQUEST_EXPIRED = "REQUEST_EXPIRED"
    ORDER_VIOLATION = "ORDER_VIOLATION"
    ALREADY_SIGNED = "ALREADY_SIGNED"
    ALREADY_DECLINED = "ALREADY_DECLINED"
    FINALIZATION_COMPLETE = "FINALIZATION_COMPLETE"
    REMINDER_THROTTLED = "REMINDER_THROTTLED"
    INVALID_TRANSITION = "INVALID_TRANSITION"


class ConcurrencyRaceLost(SigningError):
    """A competing caller won an atomic compare-and-set mid-operation.

    The enclosing transaction must be rolled back; the caller may re-evaluate once.
    """

    http_status = 409


class FinalizationError(SigningError):
    pass


class NotificationError(SigningError):
    pass
