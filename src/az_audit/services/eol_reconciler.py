"""EOL reconciliation – match live resources against retiring services.

A scan loads the deprecation dataset (remote → cache → bundled), scopes
the dataset's KQL template to the requested subscriptions, runs it
through Azure Resource Graph and groups the returned rows by the
``ServiceID`` the query computed.  Each group whose definition carries a
retirement date becomes one :class:`~az_audit.models.eol.EOLFinding`.

Failures to list subscriptions, load data or run the query never raise:
the scan returns ``ScanResult(available=False)`` with a warning so that a
larger report can still be produced.
"""

from __future__ import annotations

import logging
import re
import threading
from collections.abc import Callable, Iterable, Mapping, Sequence
from datetime import UTC, datetime
from typing import Any

from pydantic import ValidationError

from az_audit.azure_api._retry import RetryCancelledError, RetryExecutor, RetryPolicy
from az_audit.azure_api.discovery import list_subscriptions
from az_audit.azure_api.resource_graph import query_resources
from az_audit.models.eol import (
    DataSource,
    DeprecationDefinition,
    EOLFinding,
    EOLStatus,
    ResourceRecord,
    ScanResult,
)
from az_audit.scoring.eol_severity import classify_deadline, days_until_deadline
from az_audit.services.eol_sources import (
    BundledDatasetProvider,
    CachedDatasetProvider,
    DatasetCache,
    DatasetProvider,
    RemoteDatasetProvider,
    load_dataset,
)
from az_audit.settings import AuditSettings

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Query scoping
# ---------------------------------------------------------------------------


def normalize_subscriptions(subscription_ids: Iterable[str]) -> list[str]:
    """Lower-case, de-duplicate and sort subscription IDs."""
    return sorted({s.strip().lower() for s in subscription_ids if s and s.strip()})


def _kql_literal(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace("'", "\\'")
    return f"'{escaped}'"


# Pipes that start a line, i.e. operator boundaries rather than pipes in comments or strings.
_LINE_PIPE = re.compile(r"^[ \t]*\|", re.MULTILINE)


def _is_preamble(line: str) -> bool:
    stripped = line.strip()
    return not stripped or stripped.startswith("//")


def scope_query(query: str, subscription_ids: Sequence[str]) -> str:
    """Insert a ``subscriptionId`` filter after the query's table expression.

    Leading blank and ``//`` comment lines are kept in front of the query.
    Templates whose body starts directly with a pipe are prefixed with the
    ``resources`` table.
    """
    ids = ", ".join(_kql_literal(s) for s in subscription_ids)
    clause = f"| where subscriptionId in~ ({ids})"

    lines = query.strip().splitlines()
    preamble: list[str] = []
    while lines and _is_preamble(lines[0]):
        preamble.append(lines.pop(0).rstrip())
    body = "\n".join(lines).strip()

    if not body or body.startswith("|"):
        scoped = "\n".join(part for part in ("resources", clause, body) if part)
    elif match := _LINE_PIPE.search(body):
        head, rest = body[: match.start()], body[match.start() :]
        scoped = f"{head.rstrip()}\n{clause}\n{rest.lstrip()}"
    else:
        head, sep, rest = body.partition("|")
        scoped = f"{head.rstrip()}\n{clause}\n|{rest}" if sep else f"{body}\n{clause}"
    return "\n".join([*preamble, scoped])


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


def _action_text(definition: DeprecationDefinition, status: EOLStatus) -> tuple[str, str]:
    """Return ``(action_required, migration_guide)`` for a definition."""
    deadline = definition.retirement_date
    if status is EOLStatus.retired:
        lead = f"Retired on {deadline:%Y-%m-%d}; migrate affected resources now."
    else:
        lead = f"Migrate affected resources before {deadline:%Y-%m-%d}."
    if definition.link:
        return f"{lead} See the retirement notice: {definition.link}", definition.link
    return f"{lead} Review the retirement notice for this service.", ""


def _group_rows(
    definitions: Mapping[int, DeprecationDefinition],
    rows: Iterable[Mapping[str, Any] | ResourceRecord],
) -> dict[int, list[ResourceRecord]]:
    groups: dict[int, list[ResourceRecord]] = {}
    for row in rows:
        try:
            record = row if isinstance(row, ResourceRecord) else ResourceRecord.model_validate(row)
        except ValidationError as exc:
            logger.debug("Skipping malformed Resource Graph row: %s", exc)
            continue
        if record.service_id is None:
            logger.debug("Skipping %s: no usable ServiceID", record.resource_id or "<unknown>")
            continue
        if record.service_id not in definitions:
            logger.debug("Skipping %s: unknown ServiceID %s", record.resource_id, record.service_id)
            continue
        groups.setdefault(record.service_id, []).append(record)
    return groups


def reconcile(
    definitions: Mapping[int, DeprecationDefinition],
    rows: Iterable[Mapping[str, Any] | ResourceRecord],
    now: datetime,
) -> list[EOLFinding]:
    """Join query *rows* with *definitions* and classify each service group.

    Findings are ordered by days until deadline, then component name.
    """
    findings: list[EOLFinding] = []
    for service_id, records in _group_rows(definitions, rows).items():
        definition = definitions[service_id]
        if definition.retirement_date is None:
            logger.debug(
                "Skipping ServiceID %s (%d resources): no retirement date",
                service_id,
                len(records),
            )
            continue

        days = days_until_deadline(definition.retirement_date, now)
        status, severity = classify_deadline(days)
        action, guide = _action_text(definition, status)
        findings.append(
            EOLFinding(
                service_id=service_id,
                component=definition.component,
                resource_type=records[0].type,
                status=status,
                deadline=definition.retirement_date,
                days_until_deadline=days,
                severity=severity,
                affected_resources=tuple(records),
                action_required=action,
                migration_guide=guide,
            )
        )

    findings.sort(key=lambda f: (f.days_until_deadline, f.component, f.service_id))
    return findings


# ---------------------------------------------------------------------------
# Scanner
# ---------------------------------------------------------------------------


class EOLReconciler:
    """Scan subscriptions for resources that depend on retiring services."""

    def __init__(
        self,
        providers: Sequence[DatasetProvider],
        executor: RetryExecutor | None = None,
        query_runner: Callable[..., list[dict[str, Any]]] = query_resources,
        subscription_lister: Callable[..., list[dict]] = list_subscriptions,
        clock: Callable[[], datetime] = _utcnow,
        timeout: int = 30,
    ) -> None:
        self.providers = list(providers)
        self.executor = executor or RetryExecutor()
        self._run_query = query_runner
        self._list_subscriptions = subscription_lister
        self._clock = clock
        self.timeout = timeout

    def _unavailable(
        self,
        warning: str,
        scanned_at: datetime,
        subscriptions: list[str] | None = None,
        source: DataSource | None = None,
    ) -> ScanResult:
        logger.warning(warning)
        return ScanResult(
            available=False,
            source=source,
            subscriptions=subscriptions or [],
            warnings=[warning],
            scanned_at=scanned_at,
        )

    def scan(
        self,
        subscription_ids: Iterable[str] | None = None,
        *,
        tenant_id: str | None = None,
        cancel: threading.Event | None = None,
    ) -> ScanResult:
        """Return EOL findings for *subscription_ids*.

        When *subscription_ids* is ``None`` every enabled subscription
        visible to the credential is scanned.  A set *cancel* event raises
        :class:`~az_audit.azure_api.RetryCancelledError` between attempts.
        """
        scanned_at = self._clock()

        if subscription_ids is None:
            try:
                discovered = self._list_subscriptions(
                    tenant_id, executor=self.executor, timeout=self.timeout
                )
            except RetryCancelledError:
                raise
            except Exception as exc:
                return self._unavailable(f"Failed to list subscriptions: {exc}", scanned_at)
            subscription_ids = [s["id"] for s in discovered]

        subs = normalize_subscriptions(subscription_ids)
        if not subs:
            return self._unavailable("No subscriptions to scan for EOL resources", scanned_at)

        dataset = load_dataset(self.providers, cancel)
        if dataset is None:
            return self._unavailable(
                "No EOL deprecation data available (remote, cache and bundled tiers failed)",
                scanned_at,
                subs,
            )

        query = scope_query(dataset.query, subs)
        try:
            rows = self._run_query(
                query,
                subs,
                tenant_id=tenant_id,
                executor=self.executor,
                timeout=self.timeout,
                cancel=cancel,
            )
        except RetryCancelledError:
            raise
        except Exception as exc:
            return self._unavailable(
                f"EOL resource query failed: {exc}", scanned_at, subs, dataset.source
            )

        findings = reconcile(dataset.definitions, rows, scanned_at)
        logger.info(
            "EOL scan of %d subscription(s): %d rows, %d finding(s)",
            len(subs),
            len(rows),
            len(findings),
        )
        return ScanResult(
            available=True,
            source=dataset.source,
            subscriptions=subs,
            findings=findings,
            scanned_at=scanned_at,
        )


def build_reconciler(
    settings: AuditSettings | None = None,
    cache: DatasetCache | None = None,
) -> EOLReconciler:
    """Wire an :class:`EOLReconciler` from settings.

    The *cache* should be owned by the caller and reused across scans so
    that a failed download can fall back to the previous one.
    """
    if settings is None:
        from az_audit.settings import settings as default_settings

        settings = default_settings
    cache = cache or DatasetCache(max_age=settings.eol_cache_max_age)
    executor = RetryExecutor(RetryPolicy.from_settings(settings))
    providers: list[DatasetProvider] = [
        RemoteDatasetProvider(
            settings.eol_definitions_url,
            settings.eol_query_url,
            executor=executor,
            cache=cache,
            timeout=settings.http_timeout,
        ),
        CachedDatasetProvider(cache),
        BundledDatasetProvider(),
    ]
    return EOLReconciler(providers, executor=executor, timeout=settings.http_timeout)
