"""Shared Azure ARM API helpers.

Provides pure-data functions that the CLI, the FastAPI JSON API and the MCP
server can call.  Every public function returns plain Python objects
(dicts / lists) – no framework ``Response`` wrappers.

This package re-exports all public names so that ``from az_audit.azure_api
import X`` and ``from az_audit import azure_api`` both work.
"""

import time as time  # noqa: F401  # re-export for mock patching

import requests as requests  # noqa: F401  # re-export for mock patching

# -- Auth & constants -------------------------------------------------------
from az_audit.azure_api._auth import (  # noqa: F401
    AZURE_API_VERSION,
    AZURE_MGMT_URL,
    _get_headers,
    credential,
)

# -- Retry -------------------------------------------------------------------
from az_audit.azure_api._retry import (  # noqa: F401
    DEFAULT_RULES,
    DEFAULT_STATUS_CODES,
    ErrorClassifier,
    ErrorKind,
    PatternRule,
    RetryCancelledError,
    RetryExecutor,
    RetryPolicy,
    compute_delay,
)

# -- Discovery ---------------------------------------------------------------
from az_audit.azure_api.discovery import list_subscriptions  # noqa: F401

# -- Resource Graph ----------------------------------------------------------
from az_audit.azure_api.resource_graph import (  # noqa: F401
    ARG_API_VERSION,
    ARG_PAGE_SIZE,
    query_resources,
)
