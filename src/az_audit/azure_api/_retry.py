"""Retry with classification-driven back-off for ARM and dataset calls.

Every failure is classified into one of three kinds:

- ``rate_limited`` – HTTP 429 / throttling.  Waits grow exponentially
  (``base * 2**(attempt-1)``) so that the provider is not hammered while
  it is shedding load.
- ``transient`` – HTTP 502/503/504 and network-level hiccups.  Waits grow
  linearly (``base * attempt``).
- ``fatal`` – anything else.  Re-raised immediately.

Classification first looks at the HTTP status code carried by a
``requests`` exception, then at the exception type, then at ordered
regular-expression rules matched against the message text.  Rules can be
added at runtime with :meth:`ErrorClassifier.add_rule`.
"""

from __future__ import annotations

import logging
import re
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, TypeVar

import requests

if TYPE_CHECKING:
    from az_audit.settings import AuditSettings

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ErrorKind(StrEnum):
    """Outcome of classifying a failed remote call."""

    transient = "transient"
    rate_limited = "rate_limited"
    fatal = "fatal"


class RetryCancelledError(RuntimeError):
    """Raised when a cancellation event is set between attempts."""


@dataclass(frozen=True)
class PatternRule:
    """Case-insensitive regular expression mapped to an :class:`ErrorKind`."""

    pattern: str
    kind: ErrorKind
    _regex: re.Pattern[str] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "_regex", re.compile(self.pattern, re.IGNORECASE))

    def matches(self, message: str) -> bool:
        return self._regex.search(message) is not None


# Rate-limit rules come first: a throttled 503 from some RPs mentions both.
DEFAULT_RULES: tuple[PatternRule, ...] = (
    PatternRule(r"\b429\b", ErrorKind.rate_limited),
    PatternRule(r"TooManyRequests", ErrorKind.rate_limited),
    PatternRule(r"Too Many Requests", ErrorKind.rate_limited),
    PatternRule(r"throttl", ErrorKind.rate_limited),
    PatternRule(r"RateLimit", ErrorKind.rate_limited),
    PatternRule(r"\b503\b", ErrorKind.transient),
    PatternRule(r"ServiceUnavailable", ErrorKind.transient),
    PatternRule(r"Service Unavailable", ErrorKind.transient),
    PatternRule(r"\b50[24]\b", ErrorKind.transient),
    PatternRule(r"Bad Gateway", ErrorKind.transient),
    PatternRule(r"Gateway Time-?out", ErrorKind.transient),
    PatternRule(r"timed out", ErrorKind.transient),
    PatternRule(r"Timeout", ErrorKind.transient),
    PatternRule(r"Connection (reset|aborted|refused)", ErrorKind.transient),
    PatternRule(r"ConnectionError", ErrorKind.transient),
    PatternRule(r"Temporarily unavailable", ErrorKind.transient),
    PatternRule(r"RemoteDisconnected", ErrorKind.transient),
)

DEFAULT_STATUS_CODES: dict[int, ErrorKind] = {
    429: ErrorKind.rate_limited,
    502: ErrorKind.transient,
    503: ErrorKind.transient,
    504: ErrorKind.transient,
}


class ErrorClassifier:
    """Map an exception to an :class:`ErrorKind`.

    Status codes win over message rules; an HTTP error whose status code is
    not listed falls through to the message rules, then defaults to fatal.
    """

    def __init__(
        self,
        rules: Iterable[PatternRule] | None = None,
        status_codes: dict[int, ErrorKind] | None = None,
    ) -> None:
        self._rules: list[PatternRule] = list(DEFAULT_RULES if rules is None else rules)
        self._status_codes: dict[int, ErrorKind] = dict(
            DEFAULT_STATUS_CODES if status_codes is None else status_codes
        )

    @property
    def rules(self) -> tuple[PatternRule, ...]:
        return tuple(self._rules)

    def add_rule(self, pattern: str, kind: ErrorKind) -> None:
        """Append a regular-expression rule (evaluated after existing rules)."""
        self._rules.append(PatternRule(pattern, kind))

    def with_patterns(
        self,
        patterns: Iterable[str],
        kind: ErrorKind = ErrorKind.transient,
    ) -> ErrorClassifier:
        """Return a copy extended with literal substring *patterns*."""
        extra = [PatternRule(re.escape(p), kind) for p in patterns if p]
        return ErrorClassifier([*self._rules, *extra], self._status_codes)

    def __call__(self, exc: BaseException) -> ErrorKind:
        response = getattr(exc, "response", None)
        status = getattr(response, "status_code", None)
        if isinstance(status, int) and status in self._status_codes:
            return self._status_codes[status]

        if isinstance(exc, (requests.ConnectionError, requests.Timeout)):
            return ErrorKind.transient

        message = f"{type(exc).__name__}: {exc}"
        for rule in self._rules:
            if rule.matches(message):
                return rule.kind
        return ErrorKind.fatal


@dataclass(frozen=True)
class RetryPolicy:
    """Immutable retry configuration for one call site."""

    max_attempts: int = 3
    base_delay: float = 2.0
    classifier: Callable[[BaseException], ErrorKind] = field(default_factory=ErrorClassifier)
    max_delay: float | None = None

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0:
            raise ValueError("base_delay must be >= 0")

    @classmethod
    def from_settings(cls, settings: AuditSettings) -> RetryPolicy:
        classifier = ErrorClassifier().with_patterns(settings.extra_transient_patterns)
        return cls(
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay,
            classifier=classifier,
            max_delay=settings.retry_max_delay,
        )


def compute_delay(
    kind: ErrorKind,
    attempt: int,
    base_delay: float,
    max_delay: float | None = None,
) -> float:
    """Return the wait after failed *attempt* (1-based) of the given *kind*.

    Rate-limited failures back off exponentially, other transient failures
    linearly.
    """
    if kind is ErrorKind.rate_limited:
        delay = base_delay * 2 ** (attempt - 1)
    elif kind is ErrorKind.transient:
        delay = base_delay * attempt
    else:
        raise ValueError(f"No back-off for {kind} errors")
    if max_delay is not None:
        delay = min(delay, max_delay)
    return float(delay)


class RetryExecutor:
    """Run zero-argument callables under a :class:`RetryPolicy`.

    *sleep* is only used when no cancellation event is passed to
    :meth:`execute`; with an event the wait is ``event.wait(delay)`` so that
    setting the event aborts the back-off immediately.
    """

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.policy = policy or RetryPolicy()
        self._sleep = sleep

    def execute(
        self,
        operation: Callable[[], T],
        *,
        description: str | None = None,
        cancel: threading.Event | None = None,
    ) -> T:
        label = description or getattr(operation, "__name__", "operation")
        max_attempts = self.policy.max_attempts

        for attempt in range(1, max_attempts + 1):
            if cancel is not None and cancel.is_set():
                raise RetryCancelledError(f"{label} cancelled before attempt {attempt}")
            try:
                return operation()
            except RetryCancelledError:
                raise
            except Exception as exc:
                kind = self.policy.classifier(exc)
                if kind is ErrorKind.fatal or attempt == max_attempts:
                    raise
                delay = compute_delay(
                    kind, attempt, self.policy.base_delay, self.policy.max_delay
                )
                logger.warning(
                    "%s failed (%s), retrying in %.1fs (attempt %d/%d)",
                    label,
                    kind,
                    delay,
                    attempt,
                    max_attempts,
                )
            self._wait(delay, cancel, label)

        # Unreachable: the final attempt either returns or raises.
        raise AssertionError("retry loop exited without result")

    def _wait(self, delay: float, cancel: threading.Event | None, label: str) -> None:
        if cancel is None:
            self._sleep(delay)
        elif cancel.wait(delay):
            raise RetryCancelledError(f"{label} cancelled during back-off")
