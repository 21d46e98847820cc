"""az-audit – FastAPI JSON API.

Exposes subscription discovery and the EOL scan as JSON endpoints for
report renderers and dashboards.
"""

import logging

from fastapi import FastAPI, Query
from fastapi.responses import JSONResponse

from az_audit import __version__, azure_api
from az_audit.azure_api import RetryExecutor, RetryPolicy
from az_audit.services.eol_reconciler import build_reconciler
from az_audit.services.eol_sources import DatasetCache
from az_audit.settings import settings

app = FastAPI(
    title="az-audit API",
    version=__version__,
    description=(
        "REST API for Azure governance audits. "
        "Lists enabled subscriptions and reports resources that depend on "
        "retiring Azure services (end-of-life scan)."
    ),
    license_info={"name": "MIT", "url": "https://opensource.org/licenses/MIT"},
    docs_url="/docs",
    redoc_url="/redoc",
)


# ---------------------------------------------------------------------------
# Colored logging (reuse uvicorn's formatter)
# ---------------------------------------------------------------------------


def _setup_logging(level: int = logging.WARNING) -> None:
    """Configure the root ``az_audit`` logger with uvicorn-style colours."""
    from uvicorn.logging import DefaultFormatter

    handler = logging.StreamHandler()
    handler.setFormatter(
        DefaultFormatter(fmt="%(levelprefix)s %(name)s - %(message)s", use_colors=True)
    )
    app_logger = logging.getLogger("az_audit")
    app_logger.handlers = [handler]
    app_logger.setLevel(level)
    app_logger.propagate = False

    # Silence noisy third-party loggers
    logging.getLogger("azure").setLevel(logging.WARNING)


_setup_logging()
logger = logging.getLogger(__name__)

# One dataset cache for the lifetime of the server process.
_eol_cache = DatasetCache(max_age=settings.eol_cache_max_age)
reconciler = build_reconciler(settings, cache=_eol_cache)


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@app.get("/api/subscriptions", tags=["Discovery"], summary="List enabled Azure subscriptions")
def list_subscriptions(
    tenantId: str | None = Query(  # noqa: N803
        None, description="Optional tenant ID to scope the query."
    ),
) -> JSONResponse:
    """Return all enabled Azure subscriptions, sorted alphabetically."""
    try:
        executor = RetryExecutor(RetryPolicy.from_settings(settings))
        return JSONResponse(
            azure_api.list_subscriptions(tenantId, executor=executor, timeout=settings.http_timeout)
        )
    except Exception as exc:
        logger.exception("Failed to list subscriptions")
        return JSONResponse({"error": str(exc)}, status_code=500)


@app.get("/api/eol", tags=["EOL"], summary="Scan for resources on retiring services")
def scan_eol(
    subscriptions: str | None = Query(
        None,
        description="Comma-separated subscription IDs. All enabled subscriptions if omitted.",
    ),
    tenantId: str | None = Query(None, description="Optional tenant ID."),  # noqa: N803
) -> JSONResponse:
    """Return the EOL scan result.

    ``available`` is ``false`` when no deprecation data or query result
    could be obtained; ``warnings`` explains why.
    """
    sub_ids: list[str] | None = None
    if subscriptions is not None:
        sub_ids = [s.strip() for s in subscriptions.split(",") if s.strip()]
        if not sub_ids:
            return JSONResponse(
                {"error": "'subscriptions' must list at least one subscription ID"},
                status_code=400,
            )
    try:
        result = reconciler.scan(sub_ids, tenant_id=tenantId)
    except Exception as exc:
        logger.exception("EOL scan failed")
        return JSONResponse({"error": str(exc)}, status_code=500)
    return JSONResponse(result.model_dump(mode="json", by_alias=True))
