from __future__ import annotations

from typing import Any, Optional


class PimError(RuntimeError):
    pass


class AuthError(PimError):
    pass


class ValidationError(PimError):
    """
    A malformed request. Raised before any remote call is made and aborts the
    whole invocation rather than a single operation.
    """


class MissingPrerequisite(ValidationError):
    def __init__(self, field: str, required_by: Optional[str] = None) -> None:
        self.field = field
        self.required_by = required_by
        if required_by:
            msg = f"--{field} is required when --{required_by} is set"
        else:
            msg = f"missing required argument: --{field}"
        super().__init__(msg)


class UnknownScope(ValidationError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"unable to resolve scope '{name}'")


class ConfigError(ValidationError):
    pass


class RemoteError(PimError):
    def __init__(self, message: str, *, status: Optional[int] = None, body: Any = None) -> None:
        self.status = status
        self.body = body
        super().__init__(message)


class TransientRemoteError(RemoteError):
    pass


class PermanentRemoteError(RemoteError):
    pass


class RetriesExhausted(PermanentRemoteError):
    def __init__(self, last: BaseException, attempts: int) -> None:
        self.last = last
        self.attempts = attempts
        super().__init__(
            f"exhausted retries after {attempts} attempts: {last}",
            status=getattr(last, "status", None),
            body=getattr(last, "body", None),
        )


class DirectoryLookupError(PimError):
    def __init__(self, principal_id: str, cause: BaseException) -> None:
        self.principal_id = principal_id
        self.cause = cause
        super().__init__(f"principal lookup failed for {principal_id}: {cause}")


TRANSIENT_STATUS = (429, 500, 502, 503, 504)


def _error_summary(body: Any) -> str:
    if isinstance(body, dict):
        err = body.get("error")
        if isinstance(err, dict):
            code = err.get("code") or ""
            message = err.get("message") or ""
            return f"{code}: {message}".strip(": ")
    text = body if isinstance(body, str) else repr(body)
    return text[:200]


def error_for_status(status: int, body: Any, *, where: str) -> RemoteError:
    """
    Map an HTTP status to the remote error taxonomy: rate limiting and 5xx are
    transient, every other 4xx is permanent.
    """
    msg = f"{where} failed ({status}): {_error_summary(body)}"
    if status in TRANSIENT_STATUS or status >= 500:
        return TransientRemoteError(msg, status=status, body=body)
    return PermanentRemoteError(msg, status=status, body=body)
