from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Union

import requests

from . import log
from .errors import PermanentRemoteError, RetriesExhausted, TransientRemoteError


DEFAULT_RETRIES = 10
DEFAULT_BASE_DELAY = 1.0
DEFAULT_MAX_DELAY = 32.0


@dataclass(frozen=True)
class Ok:
    value: Any
    attempts: int = 1

    @property
    def ok(self) -> bool:
        return True

    def unwrap(self) -> Any:
        return self.value


@dataclass(frozen=True)
class Err:
    error: BaseException
    attempts: int = 1

    @property
    def ok(self) -> bool:
        return False

    def unwrap(self) -> Any:
        raise self.error


Result = Union[Ok, Err]


def classify(exc: BaseException) -> BaseException:
    """
    Map a raw failure onto TransientRemoteError / PermanentRemoteError.
    """
    if isinstance(exc, (TransientRemoteError, PermanentRemoteError)):
        return exc
    if isinstance(exc, (requests.Timeout, requests.ConnectionError)):
        err = TransientRemoteError(f"network error: {exc}")
        err.__cause__ = exc
        return err
    err = PermanentRemoteError(str(exc) or exc.__class__.__name__)
    err.__cause__ = exc
    return err


class RetryingOperation:
    """
    Run one remote call with a bounded retry budget.

    Only transient failures are retried. At most `retries + 1` attempts are
    made; when the budget runs out the last error is surfaced as a permanent
    RetriesExhausted. `sleep` is injectable so tests do not wait.
    """

    def __init__(
        self,
        *,
        retries: int = DEFAULT_RETRIES,
        base_delay: float = DEFAULT_BASE_DELAY,
        max_delay: float = DEFAULT_MAX_DELAY,
        sleep: Optional[Callable[[float], None]] = None,
    ) -> None:
        if retries < 0:
            raise ValueError("retries must be >= 0")
        self.retries = int(retries)
        self.base_delay = float(base_delay)
        self.max_delay = float(max_delay)
        self._sleep = sleep or time.sleep

    @property
    def max_attempts(self) -> int:
        return self.retries + 1

    def backoff(self, attempt: int) -> float:
        return min(self.max_delay, self.base_delay * (2**attempt))

    def execute(self, call: Callable[[], Any], *, what: str = "request") -> Result:
        last: Optional[BaseException] = None
        for attempt in range(self.max_attempts):
            try:
                return Ok(call(), attempt + 1)
            except Exception as e:
                err = classify(e)
            if isinstance(err, PermanentRemoteError):
                return Err(err, attempt + 1)
            last = err
            if attempt < self.retries:
                delay = self.backoff(attempt)
                log.debug(f"{what}: {err} (retrying in {delay:g}s)")
                self._sleep(delay)
        assert last is not None
        log.debug(f"{what}: no more retries left")
        return Err(RetriesExhausted(last, self.max_attempts), self.max_attempts)

    def call(self, fn: Callable[[], Any], *, what: str = "request") -> Any:
        return self.execute(fn, what=what).unwrap()
