"""Per-organization API rate limit derived from the ``api_rate_limit`` feature."""

from __future__ import annotations

import logging
import re
import sys

from sqlalchemy import select
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from . import db as database
from .config import rate_limit_base_attempts
from .engine import EntitlementEngine
from .features import UNLIMITED, FeatureKey
from .models import Organization

logger = logging.getLogger(__name__)

LIMIT_HEADER = "X-RateLimit-Limit"
ORGANIZATION_PATH = re.compile(r"^/organizations/(?P<slug>[a-z0-9]+(?:-[a-z0-9]+)*)(?:/|$)")


def resolve_rate_limit(engine: EntitlementEngine, organization: Organization | None) -> int:
    """Requests per minute allowed for ``organization``."""
    base = rate_limit_base_attempts()
    if organization is None or engine.current_plan(organization) is None:
        return base
    limit = engine.get_limit(organization, FeatureKey.API_RATE_LIMIT)
    if limit is None:
        return base
    if limit == UNLIMITED:
        return sys.maxsize
    return limit


def organization_rate_limit(slug: str) -> int | None:
    """Rate limit for the organization with ``slug``; None when it does not exist."""
    session = database.SessionLocal()
    try:
        organization = session.scalar(select(Organization).where(Organization.slug == slug))
        if organization is None:
            return None
        return resolve_rate_limit(EntitlementEngine(session), organization)
    finally:
        session.close()


class RateLimitHeadersMiddleware(BaseHTTPMiddleware):
    """Adds the organization's request ceiling to organization-scoped responses."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        response = await call_next(request)
        match = ORGANIZATION_PATH.match(request.url.path)
        if match is None:
            return response

        limit = await run_in_threadpool(organization_rate_limit, match.group("slug"))
        if limit is not None:
            response.headers[LIMIT_HEADER] = str(limit)
        return response
