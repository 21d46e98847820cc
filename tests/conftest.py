"""Shared test fixtures for az-audit tests."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime
from unittest.mock import MagicMock, patch

import pytest

from az_audit.models.eol import DataSource, DeprecationDefinition, EOLDataset

FIXED_NOW = datetime(2026, 1, 15, 12, 0, tzinfo=UTC)


@pytest.fixture(autouse=True)
def _mock_credential():
    """Prevent real Azure credential calls in every test."""
    mock_token = MagicMock()
    mock_token.token = "fake-token"
    with patch("az_audit.azure_api._auth.credential") as cred:
        cred.get_token.return_value = mock_token
        yield cred


@pytest.fixture()
def now() -> datetime:
    return FIXED_NOW


@pytest.fixture()
def make_definition() -> Callable[..., DeprecationDefinition]:
    def _make(service_id: int, name: str, retirement: str | None, **kwargs) -> DeprecationDefinition:
        return DeprecationDefinition.model_validate(
            {"ServiceID": service_id, "ServiceName": name, "RetirementDate": retirement, **kwargs}
        )

    return _make


@pytest.fixture()
def make_row() -> Callable[..., dict]:
    def _make(
        service_id: object,
        name: str = "res",
        rtype: str = "microsoft.network/loadbalancers",
        subscription_id: str = "sub-1",
    ) -> dict:
        return {
            "id": f"/subscriptions/{subscription_id}/resourceGroups/rg/providers/{rtype}/{name}",
            "resourceGroup": "rg",
            "location": "westeurope",
            "subscriptionId": subscription_id,
            "name": name,
            "type": rtype,
            "properties": {},
            "sku": {"name": "Basic"},
            "tags": None,
            "ServiceID": service_id,
        }

    return _make


@pytest.fixture()
def make_dataset() -> Callable[..., EOLDataset]:
    def _make(*definitions: DeprecationDefinition, source: DataSource = DataSource.remote) -> EOLDataset:
        return EOLDataset(
            definitions={d.service_id: d for d in definitions},
            query="resources\n| extend ServiceID = 1\n| project id, ServiceID",
            source=source,
            loaded_at=FIXED_NOW,
        )

    return _make


class StaticProvider:
    """Dataset provider returning a fixed dataset (or ``None``)."""

    def __init__(self, dataset: EOLDataset | None, source: DataSource = DataSource.remote) -> None:
        self.dataset = dataset
        self.source = source
        self.calls = 0

    def try_load(self, cancel=None) -> EOLDataset | None:
        self.calls += 1
        return self.dataset


@pytest.fixture()
def static_provider() -> type[StaticProvider]:
    return StaticProvider
