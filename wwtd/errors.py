# wwtd/errors.py

from typing import Optional


class CoreError(Exception):
    """
    Base class for every failure the core reports.
    `code` is stable and machine readable, `message` is for humans/logs.
    """

    code = "core_error"

    def __init__(self, message: str = "", *, code: Optional[str] = None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        if code:
            self.code = code


class Unauthenticated(CoreError):
    code = "unauthenticated"


class NotFound(CoreError):
    code = "not_found"


class QuotaExceeded(CoreError):
    code = "quota_exceeded"


class Busy(CoreError):
    code = "busy"


class UpstreamFailure(CoreError):
    """
    Billing or completion collaborator error.
    The original exception is kept as __cause__ (raise ... from e).
    """

    code = "upstream_failure"

    @classmethod
    def wrap(cls, source: str, exc: BaseException) -> "UpstreamFailure":
        err = cls(f"{source}: {exc}")
        err.__cause__ = exc
        return err


class ValidationFailure(CoreError):
    code = "validation_failure"
