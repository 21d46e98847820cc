"""Azure Resource Graph queries."""

from __future__ import annotations

import logging
import threading
from typing import Any

import requests

from az_audit.azure_api._auth import AZURE_MGMT_URL, _get_headers
from az_audit.azure_api._retry import RetryExecutor

logger = logging.getLogger(__name__)

ARG_API_VERSION = "2021-03-01"
ARG_PAGE_SIZE = 1000


def _arg_url() -> str:
    return f"{AZURE_MGMT_URL}/providers/Microsoft.ResourceGraph/resources?api-version={ARG_API_VERSION}"


def query_resources(
    query: str,
    subscriptions: list[str],
    tenant_id: str | None = None,
    executor: RetryExecutor | None = None,
    timeout: int = 30,
    cancel: threading.Event | None = None,
) -> list[dict[str, Any]]:
    """Run a KQL *query* against ARG and return every result row.

    Rows are requested in ``objectArray`` format, one dict per row.
    ``$skipToken`` pages are followed until exhausted; each page is a
    separate retried call so a throttled page does not restart the query.
    """
    executor = executor or RetryExecutor()
    url = _arg_url()
    rows: list[dict[str, Any]] = []
    skip_token: str | None = None
    page = 0

    while True:
        options: dict[str, Any] = {"resultFormat": "objectArray", "$top": ARG_PAGE_SIZE}
        if skip_token:
            options["$skipToken"] = skip_token
        body: dict[str, Any] = {
            "query": query,
            "subscriptions": subscriptions,
            "options": options,
        }

        def _post(body: dict[str, Any] = body) -> dict[str, Any]:
            resp = requests.post(url, headers=_get_headers(tenant_id), json=body, timeout=timeout)
            resp.raise_for_status()
            data: dict[str, Any] = resp.json()
            return data

        page += 1
        data = executor.execute(_post, description=f"Resource Graph page {page}", cancel=cancel)
        page_rows = data.get("data", [])
        if isinstance(page_rows, dict):
            # Table format fallback: {"columns": [...], "rows": [[...]]}
            columns = [c["name"] for c in page_rows.get("columns", [])]
            page_rows = [dict(zip(columns, r, strict=False)) for r in page_rows.get("rows", [])]
        rows.extend(page_rows)

        skip_token = data.get("$skipToken")
        if not skip_token:
            break

    logger.debug("Resource Graph returned %d rows in %d page(s)", len(rows), page)
    return rows
