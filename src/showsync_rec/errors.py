class RecommendationError(Exception):
    code: str = "recommendation_error"
    status: int = 400

    def __init__(self, message: str = "", *, code: str | None = None, status: int | None = None):
        super().__init__(message or self.__class__.__name__)
        if code:
            self.code = code
        if status:
            self.status = status


class InvalidArgument(RecommendationError, ValueError):
    code = "invalid_argument"
    status = 400


class InvalidTransition(InvalidArgument):
    code = "invalid_transition"
    status = 409


class NotFound(RecommendationError, LookupError):
    code = "not_found"
    status = 404


class UpstreamUnavailable(RecommendationError):
    """A collaborator timed out or failed; the caller should skip, not retry inline."""
    code = "upstream_unavailable"
    status = 503


class ConstraintViolation(RecommendationError):
    code = "constraint_violation"
    status = 409
