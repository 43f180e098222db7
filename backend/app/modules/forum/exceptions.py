"""
Forum error taxonomy.

Services raise these; the API layer maps them to HTTP status codes.
"""


class ForumError(Exception):
    """Base class for forum domain errors."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFoundError(ForumError):
    """Board, topic, message, poll or report does not exist."""

    status_code = 404


class ForbiddenError(ForumError):
    """Not the author, not a moderator, topic locked, voting closed."""

    status_code = 403


class ConflictError(ForumError):
    """Duplicate vote, duplicate open report, report already closed."""

    status_code = 409


class ForumValidationError(ForumError):
    """Malformed input: blank subject, bad poll, choice count out of range."""

    status_code = 400
