"""Error types raised by the planner stores.

Stores never return HTTP responses; they raise one of these and the API layer
maps ``status_code`` onto the response.
"""


class PlannerError(Exception):
    """Base class for expected planner failures."""

    status_code = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(PlannerError):
    """Bad or missing input. Nothing was written."""

    status_code = 400


class NotFoundError(PlannerError):
    """Referenced record does not exist, or is soft-deleted where that matters."""

    status_code = 404

    @classmethod
    def for_entity(cls, entity: str, entity_id: str) -> "NotFoundError":
        return cls(f"{entity} not found: {entity_id}")


class ConflictError(PlannerError):
    """The operation would violate a state invariant. Nothing was written."""

    status_code = 409


class StorageError(PlannerError):
    """The database failed underneath us. The transaction was rolled back."""

    status_code = 500
