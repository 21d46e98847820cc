"""MCP server for Azure governance audits.

Exposes subscription discovery and the EOL scan as MCP tools so that AI
agents can query them directly.

Run with:
    az-audit mcp            # stdio transport (default)
    az-audit mcp --sse      # SSE transport on port 8080
"""

import json
import logging
from typing import Annotated

from mcp.server.fastmcp import FastMCP
from pydantic import Field

from az_audit import azure_api
from az_audit.azure_api import RetryExecutor, RetryPolicy
from az_audit.services.eol_reconciler import build_reconciler
from az_audit.services.eol_sources import DatasetCache
from az_audit.settings import settings

logger = logging.getLogger(__name__)

mcp = FastMCP(
    "az-audit",
    instructions=(
        "Azure governance audit tools. "
        "List subscriptions, then scan them for resources that depend on "
        "retiring Azure services. All tools require valid Azure credentials "
        "via DefaultAzureCredential (e.g. `az login`)."
    ),
)

_eol_cache = DatasetCache(max_age=settings.eol_cache_max_age)
reconciler = build_reconciler(settings, cache=_eol_cache)


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


@mcp.tool()
def list_subscriptions(
    tenant_id: Annotated[
        str | None, Field(description="Optional tenant ID to scope the query.")
    ] = None,
) -> str:
    """List enabled Azure subscriptions.

    Returns a JSON array of ``{"id": ..., "name": ...}`` objects sorted
    alphabetically.
    """
    executor = RetryExecutor(RetryPolicy.from_settings(settings))
    result = azure_api.list_subscriptions(tenant_id, executor=executor, timeout=settings.http_timeout)
    return json.dumps(result, indent=2)


@mcp.tool()
def scan_eol(
    subscription_ids: Annotated[
        list[str] | None,
        Field(description="Subscription IDs to scan. All enabled subscriptions if omitted."),
    ] = None,
    tenant_id: Annotated[str | None, Field(description="Optional tenant ID.")] = None,
) -> str:
    """Find resources that depend on retiring Azure services.

    Returns the scan result as JSON: ``available`` tells whether data could
    be obtained at all, ``findings`` lists one entry per retiring service
    with its status (Announced / Deprecated / Retired), severity
    (Low → Critical), deadline and affected resources.
    """
    result = reconciler.scan(subscription_ids, tenant_id=tenant_id)
    return result.to_json()
