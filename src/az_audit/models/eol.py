"""Pydantic models for the end-of-life (EOL) scan.

Input models accept the field names used by the deprecation dataset
(``ServiceID``, ``ServiceName``, ...) and by Azure Resource Graph rows
(``id``, ``resourceGroup``, ...).  Output models serialise to camelCase
for the JSON API and MCP tools.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, date, datetime
from enum import StrEnum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, computed_field, field_validator
from pydantic.alias_generators import to_camel


class EOLStatus(StrEnum):
    announced = "Announced"
    deprecated = "Deprecated"
    retired = "Retired"


class Severity(StrEnum):
    low = "Low"
    medium = "Medium"
    high = "High"
    critical = "Critical"


class DataSource(StrEnum):
    """Tier the deprecation dataset was loaded from."""

    remote = "remote"
    cache = "cache"
    bundled = "bundled"


def _utc_date(value: datetime) -> date:
    if value.tzinfo is not None:
        value = value.astimezone(UTC)
    return value.date()


def _parse_date(value: Any) -> date | None:
    """Best-effort ISO date parsing; ``None`` when the value is unusable.

    Timestamps with an offset are converted to their UTC calendar date.
    """
    if isinstance(value, datetime):
        return _utc_date(value)
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    try:
        return _utc_date(datetime.fromisoformat(text))
    except ValueError:
        pass
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        return None


def _parse_service_id(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, float):
        service_id = int(value) if value.is_integer() else 0
    else:
        try:
            service_id = int(str(value).strip())
        except ValueError:
            return None
    return service_id if service_id > 0 else None


# ---------------------------------------------------------------------------
# Input models
# ---------------------------------------------------------------------------


class DeprecationDefinition(BaseModel):
    """One retiring service or feature from the deprecation dataset."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    service_id: int = Field(alias="ServiceID", gt=0)
    service_name: str = Field(alias="ServiceName", min_length=1)
    retiring_feature: str | None = Field(None, alias="RetiringFeature")
    retirement_date: date | None = Field(None, alias="RetirementDate")
    link: str | None = Field(None, alias="Link")

    @field_validator("retirement_date", mode="before")
    @classmethod
    def _lenient_date(cls, value: Any) -> date | None:
        # An unparseable date is a data-quality gap, not a load failure.
        return _parse_date(value)

    @field_validator("retiring_feature", "link", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @property
    def component(self) -> str:
        if self.retiring_feature:
            return f"{self.service_name} - {self.retiring_feature}"
        return self.service_name


class ResourceRecord(BaseModel):
    """A raw Resource Graph row tagged with the query-computed service ID."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    resource_id: str = Field("", alias="id")
    resource_group: str = Field("", alias="resourceGroup")
    location: str = ""
    subscription_id: str = Field("", alias="subscriptionId")
    name: str = ""
    type: str = ""
    properties: dict[str, Any] = Field(default_factory=dict)
    sku: dict[str, Any] | None = None
    tags: dict[str, Any] | None = None
    service_id: int | None = Field(
        None,
        validation_alias=AliasChoices("ServiceID", "serviceId", "service_id"),
        serialization_alias="serviceId",
    )

    @field_validator("service_id", mode="before")
    @classmethod
    def _lenient_service_id(cls, value: Any) -> int | None:
        return _parse_service_id(value)

    @field_validator("properties", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return {} if value is None else value

    @field_validator("sku", "tags", mode="before")
    @classmethod
    def _non_dict_to_none(cls, value: Any) -> Any:
        return value if isinstance(value, dict) else None


# ---------------------------------------------------------------------------
# Output models
# ---------------------------------------------------------------------------


class EOLFinding(BaseModel):
    """One retiring service with the live resources that depend on it."""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    service_id: int
    component: str
    resource_type: str
    status: EOLStatus
    deadline: date
    days_until_deadline: int
    severity: Severity
    affected_resources: tuple[ResourceRecord, ...] = Field(min_length=1)
    action_required: str
    migration_guide: str

    @computed_field(alias="affectedCount")  # type: ignore[prop-decorator]
    @property
    def affected_count(self) -> int:
        return len(self.affected_resources)


class ScanResult(BaseModel):
    """Outcome of an EOL scan.

    ``available`` is ``False`` when no deprecation data or no query result
    could be obtained; an available scan with no findings means nothing in
    scope is retiring.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    available: bool
    source: DataSource | None = None
    subscriptions: list[str] = Field(default_factory=list)
    findings: list[EOLFinding] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    scanned_at: datetime

    def to_json(self, indent: int | None = 2) -> str:
        return self.model_dump_json(by_alias=True, indent=indent)


# ---------------------------------------------------------------------------
# Dataset snapshot
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EOLDataset:
    """Deprecation definitions plus the KQL template that tags resources."""

    definitions: dict[int, DeprecationDefinition]
    query: str
    source: DataSource
    loaded_at: datetime
