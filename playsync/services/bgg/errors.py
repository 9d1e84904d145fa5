from typing import Optional

from playsync.config import settings


class BGGError(Exception):
    """Base class for everything that can go wrong talking to BGG."""


class RateLimited(BGGError):
    def __init__(self, message: str = "rate limited", retry_after: Optional[float] = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class RetryExhausted(BGGError):
    def __init__(self, message: str, attempts: int) -> None:
        super().__init__(message)
        self.attempts = attempts


class AuthenticationFailed(BGGError):
    pass


class MissingCredentials(AuthenticationFailed):
    pass


class MalformedResponse(BGGError):
    pass


class PermanentClientError(BGGError):
    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class MissingExternalMapping(BGGError):
    pass


class TransientNetworkError(BGGError):
    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class DeduplicationInvariantError(RuntimeError):
    """The leading/excluded graph for a grouping key is inconsistent."""


class StalePlaySubmission(RuntimeError):
    """The play was edited while its submission was in flight; the sent payload is out of date."""


class PlayValidationError(ValueError):
    pass


def truncate_error(exc: BaseException, limit: Optional[int] = None) -> str:
    limit = limit or settings.SYNC_ERROR_MAX_LENGTH
    text = f"{type(exc).__name__}: {exc}"
    return text[:limit]


def classify_submission_error(exc: BaseException) -> str:
    if isinstance(exc, AuthenticationFailed):
        prefix = "authentication"
    elif isinstance(exc, (TransientNetworkError, RateLimited, RetryExhausted)):
        prefix = "network"
    else:
        prefix = "submission"
    return f"{prefix}: {truncate_error(exc)}"[: settings.SYNC_ERROR_MAX_LENGTH]
