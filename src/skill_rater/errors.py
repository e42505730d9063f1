"""Error taxonomy shared by the rating engine and the request boundary."""


class SkillRaterError(Exception):
    """Base class for errors surfaced to API callers.

    Attributes:
        status_code: HTTP status the request boundary responds with.
        retryable: Whether the caller may safely retry the same request.
    """

    status_code: int = 500
    retryable: bool = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidRequestError(SkillRaterError):
    status_code = 400


class NotFoundError(SkillRaterError):
    status_code = 404


class ModeLockedError(SkillRaterError):
    status_code = 403


class InvalidTransitionError(SkillRaterError):
    status_code = 409


class TurnInProgressError(SkillRaterError):
    status_code = 409
    retryable = True


class ConcurrencyError(SkillRaterError):
    """Optimistic write retries were exhausted."""

    status_code = 503
    retryable = True


class UpstreamError(SkillRaterError):
    """The evaluation service failed or was unreachable."""

    status_code = 502
    retryable = True


class RateLimitedError(UpstreamError):
    status_code = 429


class QuotaExhaustedError(UpstreamError):
    status_code = 402


class StaleWriteError(Exception):
    """A compare-and-swap write found a newer row version than it read."""
