# sns_publisher/exceptions.py
"""
Error taxonomy for the publishing pipeline.

    PublisherError
    +-- ConfigurationError        missing/invalid secrets, fatal at startup
    +-- DecryptionError           tampered credential or key mismatch
    +-- NotFoundError             owner-scoped lookup missed
    +-- OAuthError
    |   +-- StateMismatch
    |   +-- StateExpired
    |   +-- TokenExchangeError
    |   +-- PlatformNotConfigured
    +-- PublishError
    |   +-- RateLimited
    |   +-- AuthExpired
    |   +-- PermanentRejection
    |   |   +-- ContentTooLong
    |   +-- TransientFailure
    +-- JobError
        +-- JobNotFound
        +-- JobStateError
"""
from typing import Optional


class PublisherError(Exception):
    pass


class ConfigurationError(PublisherError):
    pass


class DecryptionError(PublisherError):
    pass


class NotFoundError(PublisherError):
    pass


# --- OAuth ---
class OAuthError(PublisherError):
    pass


class StateMismatch(OAuthError):
    pass


class StateExpired(OAuthError):
    pass


class TokenExchangeError(OAuthError):
    pass


class PlatformNotConfigured(OAuthError):
    pass


# --- publishing ---
class PublishError(PublisherError):
    retryable = False

    def __init__(
        self,
        message: str,
        platform: Optional[str] = None,
        status_code: Optional[int] = None,
        outcome_unknown: bool = False,
    ):
        super().__init__(message)
        self.platform = platform
        self.status_code = status_code
        # the request may have taken effect on the platform before it failed
        self.outcome_unknown = outcome_unknown


class RateLimited(PublishError):
    retryable = True


class AuthExpired(PublishError):
    pass


class PermanentRejection(PublishError):
    pass


class ContentTooLong(PermanentRejection):
    pass


class TransientFailure(PublishError):
    retryable = True


# --- job queue ---
class JobError(PublisherError):
    pass


class JobNotFound(JobError):
    pass


class JobStateError(JobError):
    pass
