"""Deprecation dataset sources – remote, cached and bundled tiers.

The EOL scan needs two artefacts: the list of deprecation definitions
(JSON, keyed by service ID) and a KQL template that tags each resource
with the ``ServiceID`` it depends on.  Both are loaded through an ordered
chain of providers; the first one that yields a dataset wins:

1. :class:`RemoteDatasetProvider` – fresh download (stored into the cache)
2. :class:`CachedDatasetProvider` – last successful download, if not too old
3. :class:`BundledDatasetProvider` – static copy shipped in ``az_audit/data``
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import replace
from datetime import UTC, datetime
from importlib import resources
from typing import Any, Protocol

import requests
from pydantic import ValidationError

from az_audit.azure_api._retry import RetryCancelledError, RetryExecutor
from az_audit.models.eol import DataSource, DeprecationDefinition, EOLDataset

logger = logging.getLogger(__name__)

_DATA_PACKAGE = "az_audit.data"
BUNDLED_DEFINITIONS = "eol_definitions.json"
BUNDLED_QUERY = "eol_query.kql"


def _utcnow() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def parse_definitions(payload: Any) -> dict[int, DeprecationDefinition]:
    """Build ``{service_id: definition}`` from a decoded JSON payload.

    Accepts a list of entries or a mapping keyed by service ID.  Entries
    that fail validation are skipped; on duplicate IDs the first entry wins.
    """
    if isinstance(payload, dict):
        entries: list[Any] = []
        for key, entry in payload.items():
            if isinstance(entry, dict):
                entries.append({"ServiceID": key, **entry})
    elif isinstance(payload, list):
        entries = payload
    else:
        raise ValueError(f"Unsupported deprecation dataset type: {type(payload).__name__}")

    definitions: dict[int, DeprecationDefinition] = {}
    for entry in entries:
        try:
            definition = DeprecationDefinition.model_validate(entry)
        except ValidationError as exc:
            logger.debug("Skipping invalid deprecation entry %r: %s", entry, exc)
            continue
        if definition.service_id in definitions:
            logger.debug("Duplicate ServiceID %s ignored", definition.service_id)
            continue
        definitions[definition.service_id] = definition
    return definitions


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------


class DatasetCache:
    """Holds the most recent downloaded dataset for up to *max_age* seconds.

    A single immutable snapshot is swapped under a lock, so concurrent scans
    each read a consistent dataset.
    """

    def __init__(
        self,
        max_age: float = 86400,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_age = max_age
        self._clock = clock
        self._lock = threading.Lock()
        self._entry: tuple[float, EOLDataset] | None = None

    def store(self, dataset: EOLDataset) -> None:
        with self._lock:
            self._entry = (self._clock(), dataset)

    def get(self) -> EOLDataset | None:
        """Return the cached dataset, or ``None`` when empty or expired."""
        with self._lock:
            entry = self._entry
        if entry is None:
            return None
        ts, dataset = entry
        if self._clock() - ts >= self.max_age:
            return None
        return dataset

    def invalidate(self) -> None:
        with self._lock:
            self._entry = None


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------


class DatasetProvider(Protocol):
    source: DataSource

    def try_load(self, cancel: threading.Event | None = None) -> EOLDataset | None: ...


def read_bundled_query() -> str:
    return resources.files(_DATA_PACKAGE).joinpath(BUNDLED_QUERY).read_text(encoding="utf-8")


class RemoteDatasetProvider:
    """Download definitions (and optionally the KQL template) over HTTPS.

    When *query_url* is empty the bundled KQL template is paired with the
    downloaded definitions.
    """

    source = DataSource.remote

    def __init__(
        self,
        definitions_url: str,
        query_url: str = "",
        executor: RetryExecutor | None = None,
        cache: DatasetCache | None = None,
        timeout: int = 30,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.definitions_url = definitions_url
        self.query_url = query_url
        self.executor = executor or RetryExecutor()
        self.cache = cache
        self.timeout = timeout
        self._clock = clock

    def _get(self, url: str) -> requests.Response:
        resp = requests.get(url, timeout=self.timeout)
        resp.raise_for_status()
        return resp

    def try_load(self, cancel: threading.Event | None = None) -> EOLDataset | None:
        if not self.definitions_url:
            logger.debug("Remote EOL dataset not configured")
            return None

        try:
            payload = self.executor.execute(
                lambda: self._get(self.definitions_url).json(),
                description="Download EOL definitions",
                cancel=cancel,
            )
            definitions = parse_definitions(payload)
            if self.query_url:
                query = self.executor.execute(
                    lambda: self._get(self.query_url).text,
                    description="Download EOL query",
                    cancel=cancel,
                )
            else:
                query = read_bundled_query()
        except RetryCancelledError:
            raise
        except Exception as exc:
            logger.warning("Failed to download EOL dataset: %s", exc)
            return None

        if not definitions or not query.strip():
            logger.warning("Downloaded EOL dataset is empty, ignoring it")
            return None

        dataset = EOLDataset(
            definitions=definitions,
            query=query,
            source=DataSource.remote,
            loaded_at=self._clock(),
        )
        if self.cache is not None:
            self.cache.store(dataset)
        return dataset


class CachedDatasetProvider:
    """Serve the last successful download while it is younger than max age."""

    source = DataSource.cache

    def __init__(self, cache: DatasetCache) -> None:
        self.cache = cache

    def try_load(self, cancel: threading.Event | None = None) -> EOLDataset | None:
        dataset = self.cache.get()
        if dataset is None:
            logger.debug("No valid cached EOL dataset")
            return None
        return replace(dataset, source=DataSource.cache)


class BundledDatasetProvider:
    """Load the static dataset shipped with the package."""

    source = DataSource.bundled

    def __init__(
        self,
        package: str = _DATA_PACKAGE,
        definitions_name: str = BUNDLED_DEFINITIONS,
        query_name: str = BUNDLED_QUERY,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.package = package
        self.definitions_name = definitions_name
        self.query_name = query_name
        self._clock = clock

    def try_load(self, cancel: threading.Event | None = None) -> EOLDataset | None:
        try:
            root = resources.files(self.package)
            payload = json.loads(root.joinpath(self.definitions_name).read_text(encoding="utf-8"))
            query = root.joinpath(self.query_name).read_text(encoding="utf-8")
            definitions = parse_definitions(payload)
        except (OSError, ValueError, ModuleNotFoundError) as exc:
            logger.warning("Bundled EOL dataset unavailable: %s", exc)
            return None

        if not definitions or not query.strip():
            logger.warning("Bundled EOL dataset is empty")
            return None
        return EOLDataset(
            definitions=definitions,
            query=query,
            source=DataSource.bundled,
            loaded_at=self._clock(),
        )


def load_dataset(
    providers: Iterable[DatasetProvider],
    cancel: threading.Event | None = None,
) -> EOLDataset | None:
    """Return the dataset from the first provider that yields one."""
    for provider in providers:
        dataset = provider.try_load(cancel)
        if dataset is not None:
            logger.info(
                "Loaded %d EOL definitions from %s tier",
                len(dataset.definitions),
                dataset.source,
            )
            return dataset
    return None
