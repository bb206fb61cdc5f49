"""Typed failures raised by the session engine.

Request handlers translate these into HTTP responses; the live-event path
logs and drops them.
"""


class QuizRoomError(Exception):
    status_code = 500
    category = "Internal Server Error"

    def __init__(self, description: str, category: str = None):
        super().__init__(description)
        self.description = description
        if category:
            self.category = category


class NotFound(QuizRoomError):
    status_code = 404
    category = "Not Found"


class Forbidden(QuizRoomError):
    status_code = 403
    category = "Forbidden"


class Conflict(QuizRoomError):
    status_code = 409
    category = "Conflict"


class ValidationFailure(QuizRoomError):
    status_code = 400
    category = "Validation"


class Unavailable(QuizRoomError):
    status_code = 503
    category = "Unavailable"


class SessionStillActive(Conflict):
    """Scoring and analytics only run on closed sessions."""

    category = "Session"


class CachePayloadError(NotFound):
    """A memoized payload could not be decoded."""

    category = "Cache"
