"""Error taxonomy for the event engine.

Store operations raise these; the HTTP layer maps them to responses in
``keepsake.middleware.error_handler``.
"""

from dataclasses import dataclass

from pydantic import ValidationError


class KeepsakeError(Exception):
    """Base class for all domain errors."""


@dataclass(frozen=True)
class FieldError:
    field: str
    message: str

    def as_dict(self) -> dict[str, str]:
        return {"field": self.field, "message": self.message}


class EventValidationError(KeepsakeError):
    """Malformed or out-of-range input. Raised before any write."""

    def __init__(self, errors: list[FieldError]) -> None:
        self.errors = errors
        summary = "; ".join(f"{e.field}: {e.message}" for e in errors)
        super().__init__(summary or "Validation failed")

    @property
    def fields(self) -> set[str]:
        return {e.field for e in self.errors}

    @classmethod
    def from_pydantic(cls, exc: ValidationError) -> "EventValidationError":
        errors = []
        for err in exc.errors():
            field = ".".join(str(part) for part in err["loc"]) or "event"
            message = err["msg"].removeprefix("Value error, ")
            errors.append(FieldError(field, message))
        return cls(errors)


class NotFoundError(KeepsakeError):
    """Referenced event does not exist (or is in the wrong deletion state)."""

    def __init__(self, event_id: int | None = None) -> None:
        self.event_id = event_id
        super().__init__("Event not found")


class StorageError(KeepsakeError):
    """Persistence failure. The transaction has been rolled back; safe to retry."""

    def __init__(self, operation: str) -> None:
        self.operation = operation
        super().__init__(f"Storage failure during {operation}")


class CalculationLimitExceeded(KeepsakeError):
    """Occurrence expansion stopped at the safety ceiling.

    Carried alongside partial results; never raised out of the calculator.
    """

    def __init__(self, event_id: int, limit: int) -> None:
        self.event_id = event_id
        self.limit = limit
        super().__init__(f"Occurrence expansion for event {event_id} stopped after {limit} iterations")
