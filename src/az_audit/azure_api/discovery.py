"""Subscription discovery."""

from __future__ import annotations

import logging

import requests

from az_audit.azure_api._auth import AZURE_API_VERSION, AZURE_MGMT_URL, _get_headers
from az_audit.azure_api._retry import RetryExecutor

logger = logging.getLogger(__name__)


def _list_pages(url: str, headers: dict[str, str], timeout: int) -> list[dict]:
    """Follow ``nextLink`` and merge each page's ``value`` list."""
    items: list[dict] = []
    page = 0
    next_url: str | None = url
    while next_url:
        page += 1
        resp = requests.get(next_url, headers=headers, timeout=timeout)
        resp.raise_for_status()
        data = resp.json()
        values = data.get("value", [])
        logger.debug("Subscription listing page %d: %d entries", page, len(values))
        items.extend(values)
        next_url = data.get("nextLink")
    return items


def list_subscriptions(
    tenant_id: str | None = None,
    executor: RetryExecutor | None = None,
    timeout: int = 30,
) -> list[dict]:
    """Return enabled subscriptions as ``[{"id": ..., "name": ...}, ...]``.

    The whole listing runs under *executor* so that throttled or
    unavailable ARM responses restart it from the first page.
    """
    executor = executor or RetryExecutor()
    url = f"{AZURE_MGMT_URL}/subscriptions?api-version={AZURE_API_VERSION}"

    def _fetch() -> list[dict]:
        return _list_pages(url, _get_headers(tenant_id), timeout)

    all_subs = executor.execute(_fetch, description="List subscriptions")

    subs = [
        {"id": s["subscriptionId"], "name": s.get("displayName") or s["subscriptionId"]}
        for s in all_subs
        if s.get("state") == "Enabled"
    ]
    logger.debug("Discovered %d enabled subscriptions", len(subs))
    return sorted(subs, key=lambda x: x["name"].lower())
