class QueueError(Exception):
    """Base class for failures surfaced to the caller of a queue operation."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFound(QueueError):
    status_code = 404


class ValidationError(QueueError):
    status_code = 400


class ConflictError(QueueError):
    """The change would leave more than one entry in progress."""

    status_code = 409


class StoreUnavailable(QueueError):
    status_code = 503
