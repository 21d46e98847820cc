"""EOL status and severity classification.

Pure functions: the status and severity of a retiring service depend only
on how many days remain until its retirement date.

Deadlines are compared as calendar dates, so a retirement date equal to
today yields ``0`` days and is classified ``Deprecated`` / ``Critical``;
only dates strictly before today are ``Retired``.
"""

from __future__ import annotations

from datetime import UTC, date, datetime

from az_audit.models.eol import EOLStatus, Severity

# (exclusive upper bound in days, status, severity), evaluated in order
# after the retired check.
_DEADLINE_BANDS: list[tuple[int, EOLStatus, Severity]] = [
    (30, EOLStatus.deprecated, Severity.critical),
    (90, EOLStatus.deprecated, Severity.high),
    (180, EOLStatus.announced, Severity.medium),
]
_FAR_FUTURE = (EOLStatus.announced, Severity.low)


def _as_date(now: date | datetime) -> date:
    if isinstance(now, datetime):
        if now.tzinfo is not None:
            now = now.astimezone(UTC)
        return now.date()
    return now


def days_until_deadline(deadline: date, now: date | datetime) -> int:
    """Signed number of calendar days from *now* (UTC) to *deadline*."""
    return (deadline - _as_date(now)).days


def classify_deadline(days: int) -> tuple[EOLStatus, Severity]:
    """Map days-until-deadline to ``(status, severity)``.

    A past deadline is always ``Retired`` / ``Critical`` regardless of the
    day bands.
    """
    if days < 0:
        return EOLStatus.retired, Severity.critical
    for upper, status, severity in _DEADLINE_BANDS:
        if days < upper:
            return status, severity
    return _FAR_FUTURE
