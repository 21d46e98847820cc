"""Tests for EOL reconciliation and the scan workflow."""

import logging
from datetime import timedelta

import pytest

from az_audit.azure_api import RetryCancelledError
from az_audit.models.eol import DataSource, EOLStatus, Severity
from az_audit.services.eol_reconciler import (
    EOLReconciler,
    build_reconciler,
    normalize_subscriptions,
    reconcile,
    scope_query,
)
from az_audit.services.eol_sources import (
    BundledDatasetProvider,
    CachedDatasetProvider,
    DatasetCache,
    RemoteDatasetProvider,
)
from az_audit.settings import AuditSettings


def _in_days(now, days: int) -> str:
    return (now.date() + timedelta(days=days)).isoformat()


class FakeQueryRunner:
    """Records Resource Graph calls and returns canned rows."""

    def __init__(self, rows=None, error: Exception | None = None) -> None:
        self.rows = rows or []
        self.error = error
        self.calls: list[tuple[str, list[str], dict]] = []

    def __call__(self, query, subscriptions, **kwargs):
        self.calls.append((query, subscriptions, kwargs))
        if self.error is not None:
            raise self.error
        return list(self.rows)


# ---------------------------------------------------------------------------
# Query scoping
# ---------------------------------------------------------------------------


class TestScopeQuery:
    """Tests for scope_query."""

    def test_inserts_filter_after_table(self):
        query = "resources\n| extend ServiceID = 1\n| project id"
        scoped = scope_query(query, ["a", "b"])
        assert scoped == (
            "resources\n| where subscriptionId in~ ('a', 'b')\n| extend ServiceID = 1\n| project id"
        )

    def test_prefixes_table_when_template_starts_with_pipe(self):
        scoped = scope_query("| project id", ["a"])
        assert scoped == "resources\n| where subscriptionId in~ ('a')\n| project id"

    def test_bare_table(self):
        assert scope_query("resources", ["a"]) == "resources\n| where subscriptionId in~ ('a')"

    def test_leading_comment_with_pipe_is_kept_out_of_pipeline(self):
        query = "// EOL query | maintained upstream\nresources\n| extend ServiceID = 1\n| project id"
        scoped = scope_query(query, ["a"])
        assert scoped == (
            "// EOL query | maintained upstream\n"
            "resources\n"
            "| where subscriptionId in~ ('a')\n"
            "| extend ServiceID = 1\n"
            "| project id"
        )

    def test_blank_and_comment_lines_before_pipe_only_template(self):
        scoped = scope_query("// header\n\n// more | text\n| project id", ["a"])
        assert scoped == (
            "// header\n\n// more | text\nresources\n| where subscriptionId in~ ('a')\n| project id"
        )

    def test_splits_on_line_leading_pipe(self):
        query = "resources\n| where name has '|'\n| project id"
        scoped = scope_query(query, ["a"])
        assert scoped.splitlines()[:3] == [
            "resources",
            "| where subscriptionId in~ ('a')",
            "| where name has '|'",
        ]

    def test_escapes_quotes(self):
        scoped = scope_query("resources | project id", ["a'b"])
        assert "('a\\'b')" in scoped


class TestNormalizeSubscriptions:
    """Tests for normalize_subscriptions."""

    def test_dedup_sort_and_lowercase(self):
        assert normalize_subscriptions(["B", "a", " b ", "", "A"]) == ["a", "b"]


# ---------------------------------------------------------------------------
# reconcile
# ---------------------------------------------------------------------------


class TestReconcile:
    """Tests for the join / group / classify step."""

    def test_basic_scenario(self, now, make_definition, make_row):
        defs = {1: make_definition(1, "Basic LB", _in_days(now, 10))}
        rows = [make_row(1, "lb1"), make_row(1, "lb2"), make_row(99, "other")]

        findings = reconcile(defs, rows, now)

        assert len(findings) == 1
        finding = findings[0]
        assert finding.service_id == 1
        assert finding.component == "Basic LB"
        assert finding.affected_count == 2
        assert [r.name for r in finding.affected_resources] == ["lb1", "lb2"]
        assert finding.status is EOLStatus.deprecated
        assert finding.severity is Severity.critical
        assert finding.days_until_deadline == 10

    def test_unparseable_service_ids_dropped(self, now, make_definition, make_row):
        defs = {1: make_definition(1, "Basic LB", _in_days(now, 10))}
        rows = [make_row("abc"), make_row(None), make_row(0), make_row(1)]
        findings = reconcile(defs, rows, now)
        assert [f.affected_count for f in findings] == [1]

    def test_definition_without_date_produces_no_finding(self, now, make_definition, make_row):
        defs = {
            1: make_definition(1, "No date", "TBD"),
            2: make_definition(2, "Dated", _in_days(now, 200)),
        }
        findings = reconcile(defs, [make_row(1), make_row(2)], now)
        assert [f.service_id for f in findings] == [2]

    def test_thirty_day_boundary(self, now, make_definition, make_row):
        defs = {
            1: make_definition(1, "Soon", _in_days(now, 29)),
            2: make_definition(2, "Later", _in_days(now, 31)),
        }
        findings = reconcile(defs, [make_row(1), make_row(2)], now)
        by_id = {f.service_id: f for f in findings}
        assert by_id[1].severity is Severity.critical
        assert by_id[2].severity is Severity.high
        assert by_id[2].status is EOLStatus.deprecated

    def test_deadline_today_is_deprecated_not_retired(self, now, make_definition, make_row):
        defs = {1: make_definition(1, "Today", _in_days(now, 0))}
        (finding,) = reconcile(defs, [make_row(1)], now)
        assert finding.days_until_deadline == 0
        assert finding.status is EOLStatus.deprecated
        assert finding.severity is Severity.critical

    def test_past_deadline_is_retired(self, now, make_definition, make_row):
        defs = {1: make_definition(1, "Gone", _in_days(now, -1))}
        (finding,) = reconcile(defs, [make_row(1)], now)
        assert finding.days_until_deadline == -1
        assert finding.status is EOLStatus.retired
        assert finding.severity is Severity.critical
        assert finding.action_required.startswith("Retired on")

    def test_resource_type_is_first_seen(self, now, make_definition, make_row):
        defs = {1: make_definition(1, "X", _in_days(now, 100))}
        rows = [make_row(1, rtype="microsoft.network/publicipaddresses"), make_row(1)]
        (finding,) = reconcile(defs, rows, now)
        assert finding.resource_type == "microsoft.network/publicipaddresses"

    def test_component_includes_feature(self, now, make_definition, make_row):
        defs = {1: make_definition(1, "MySQL", _in_days(now, 5), RetiringFeature="Single Server")}
        (finding,) = reconcile(defs, [make_row(1)], now)
        assert finding.component == "MySQL - Single Server"

    def test_action_with_link(self, now, make_definition, make_row):
        link = "https://learn.microsoft.com/azure/retire"
        defs = {1: make_definition(1, "X", _in_days(now, 100), Link=link)}
        (finding,) = reconcile(defs, [make_row(1)], now)
        assert finding.migration_guide == link
        assert link in finding.action_required

    def test_action_without_link(self, now, make_definition, make_row):
        defs = {1: make_definition(1, "X", _in_days(now, 100))}
        (finding,) = reconcile(defs, [make_row(1)], now)
        assert finding.migration_guide == ""
        assert "Review the retirement notice" in finding.action_required
        assert "http" not in finding.action_required

    def test_ordering_by_deadline_then_component(self, now, make_definition, make_row):
        defs = {
            1: make_definition(1, "Zeta", _in_days(now, 200)),
            2: make_definition(2, "Beta", _in_days(now, 50)),
            3: make_definition(3, "Alpha", _in_days(now, 50)),
            4: make_definition(4, "Old", _in_days(now, -30)),
        }
        rows = [make_row(i) for i in (1, 2, 3, 4)]
        findings = reconcile(defs, rows, now)
        assert [f.component for f in findings] == ["Old", "Alpha", "Beta", "Zeta"]

    def test_no_rows(self, now, make_definition):
        assert reconcile({1: make_definition(1, "X", "2026-01-01")}, [], now) == []


# ---------------------------------------------------------------------------
# EOLReconciler.scan
# ---------------------------------------------------------------------------


class TestScan:
    """Tests for EOLReconciler.scan."""

    def _reconciler(self, providers, runner, now, lister=None) -> EOLReconciler:
        kwargs = {}
        if lister is not None:
            kwargs["subscription_lister"] = lister
        return EOLReconciler(providers, query_runner=runner, clock=lambda: now, **kwargs)

    def test_scan_returns_findings(self, now, static_provider, make_dataset, make_definition, make_row):
        dataset = make_dataset(make_definition(1, "Basic LB", _in_days(now, 10)))
        runner = FakeQueryRunner([make_row(1, "a"), make_row(1, "b"), make_row(99, "c")])
        result = self._reconciler([static_provider(dataset)], runner, now).scan(["SUB-2", "sub-1", "sub-2"])

        assert result.available is True
        assert result.source is DataSource.remote
        assert result.subscriptions == ["sub-1", "sub-2"]
        assert result.scanned_at == now
        assert len(result.findings) == 1
        assert result.findings[0].affected_count == 2
        assert result.warnings == []

        query, subs, kwargs = runner.calls[0]
        assert subs == ["sub-1", "sub-2"]
        assert "| where subscriptionId in~ ('sub-1', 'sub-2')" in query
        assert kwargs["tenant_id"] is None

    def test_available_with_zero_findings(self, now, static_provider, make_dataset, make_definition):
        dataset = make_dataset(make_definition(1, "X", _in_days(now, 10)))
        result = self._reconciler([static_provider(dataset)], FakeQueryRunner([]), now).scan(["s"])
        assert result.available is True
        assert result.findings == []

    def test_no_dataset_returns_unavailable(self, now, static_provider, caplog):
        runner = FakeQueryRunner()
        reconciler = self._reconciler([static_provider(None), static_provider(None)], runner, now)
        with caplog.at_level(logging.WARNING, logger="az_audit.services.eol_reconciler"):
            result = reconciler.scan(["sub-1"])
        assert result.available is False
        assert result.findings == []
        assert result.source is None
        assert "No EOL deprecation data available" in result.warnings[0]
        assert "No EOL deprecation data available" in caplog.text
        assert runner.calls == []

    def test_query_failure_returns_unavailable(self, now, static_provider, make_dataset, make_definition):
        dataset = make_dataset(make_definition(1, "X", _in_days(now, 10)), source=DataSource.bundled)
        runner = FakeQueryRunner(error=RuntimeError("403 Forbidden"))
        result = self._reconciler([static_provider(dataset)], runner, now).scan(["sub-1"])
        assert result.available is False
        assert result.source is DataSource.bundled
        assert "EOL resource query failed: 403 Forbidden" in result.warnings[0]

    def test_discovers_subscriptions_when_none_given(
        self, now, static_provider, make_dataset, make_definition
    ):
        dataset = make_dataset(make_definition(1, "X", _in_days(now, 10)))
        runner = FakeQueryRunner([])

        def lister(tenant_id, **kwargs):
            assert tenant_id == "tid"
            return [{"id": "sub-b", "name": "B"}, {"id": "sub-a", "name": "A"}]

        result = self._reconciler([static_provider(dataset)], runner, now, lister).scan(tenant_id="tid")
        assert result.subscriptions == ["sub-a", "sub-b"]
        assert runner.calls[0][2]["tenant_id"] == "tid"

    def test_subscription_discovery_failure(self, now, static_provider):
        def lister(tenant_id, **kwargs):
            raise RuntimeError("auth failed")

        provider = static_provider(None)
        result = self._reconciler([provider], FakeQueryRunner(), now, lister).scan()
        assert result.available is False
        assert "Failed to list subscriptions: auth failed" in result.warnings[0]
        assert provider.calls == 0

    def test_empty_subscription_list(self, now, static_provider):
        provider = static_provider(None)
        result = self._reconciler([provider], FakeQueryRunner(), now).scan(["", "  "])
        assert result.available is False
        assert provider.calls == 0

    def test_cancellation_propagates(self, now, static_provider, make_dataset, make_definition):
        dataset = make_dataset(make_definition(1, "X", _in_days(now, 10)))
        runner = FakeQueryRunner(error=RetryCancelledError("stop"))
        with pytest.raises(RetryCancelledError):
            self._reconciler([static_provider(dataset)], runner, now).scan(["sub-1"])

    def test_idempotent(self, now, static_provider, make_dataset, make_definition, make_row):
        dataset = make_dataset(
            make_definition(1, "A", _in_days(now, 10)),
            make_definition(2, "B", _in_days(now, 100)),
        )
        rows = [make_row(2, "x"), make_row(1, "y"), make_row(2, "z")]
        reconciler = self._reconciler([static_provider(dataset)], FakeQueryRunner(rows), now)
        first = reconciler.scan(["sub-1"])
        second = reconciler.scan(["sub-1"])
        assert first.findings == second.findings
        assert first.to_json() == second.to_json()

    def test_json_is_camel_case(self, now, static_provider, make_dataset, make_definition, make_row):
        dataset = make_dataset(make_definition(1, "A", _in_days(now, 10)))
        result = self._reconciler([static_provider(dataset)], FakeQueryRunner([make_row(1)]), now).scan(["s"])
        data = result.model_dump(mode="json", by_alias=True)
        finding = data["findings"][0]
        assert finding["daysUntilDeadline"] == 10
        assert finding["affectedCount"] == 1
        assert finding["severity"] == "Critical"
        assert finding["affectedResources"][0]["serviceId"] == 1
        assert "scannedAt" in data


class TestBuildReconciler:
    """Tests for build_reconciler wiring."""

    def test_provider_chain_and_policy(self):
        settings = AuditSettings(
            retry_max_attempts=4,
            retry_base_delay=1.0,
            eol_definitions_url="https://example.test/eol.json",
            eol_cache_max_age=120,
            http_timeout=10,
        )
        cache = DatasetCache(max_age=120)
        reconciler = build_reconciler(settings, cache=cache)

        remote, cached, bundled = reconciler.providers
        assert isinstance(remote, RemoteDatasetProvider)
        assert remote.definitions_url == "https://example.test/eol.json"
        assert remote.cache is cache
        assert remote.timeout == 10
        assert isinstance(cached, CachedDatasetProvider)
        assert cached.cache is cache
        assert isinstance(bundled, BundledDatasetProvider)
        assert reconciler.executor.policy.max_attempts == 4
        assert reconciler.timeout == 10
