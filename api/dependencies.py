"""
api/dependencies.py -- Request-scoped accessors for app.state resources.

The lifespan in api/main.py puts one RegistryStore, one RiskService and an
optional ReportCache on app.state. Route handlers fetch them through these
helpers instead of reaching into app.state directly, so tests can swap the
lifespan without touching handlers.

Also hosts domain_fields(), the single place where a Pydantic request body
is flattened into the keyword arguments RegistryStore.update_*() accepts.

Layer rule: no imports from registry/ internals beyond the public classes.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from fastapi import Request
from pydantic import BaseModel

from cache.store import ReportCache
from registry.risks import RiskService
from registry.store import RegistryStore


def get_store(request: Request) -> RegistryStore:
    return request.app.state.store


def get_service(request: Request) -> RiskService:
    return request.app.state.service


def get_cache(request: Request) -> Optional[ReportCache]:
    return getattr(request.app.state, "cache", None)


def invalidate_reports(request: Request) -> None:
    """Drop every cached report after a registry write."""
    cache = get_cache(request)
    if cache is not None:
        cache.invalidate()


def iso(value: datetime) -> str:
    """ISO 8601 with an explicit offset; naive datetimes are taken as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return iso(value)
    return value


def domain_fields(body: BaseModel, partial: bool = False) -> dict[str, Any]:
    """Flatten a request body to domain-ready values.

    Enums become their string values and datetimes ISO strings. With
    partial=True only fields the client actually sent (and did not send as
    null) are returned, which is what PATCH handlers pass to update_*().
    Nested models stay dicts; callers convert those they care about.
    """
    data = body.model_dump(exclude_unset=partial, exclude_none=partial)
    return {k: _plain(v) for k, v in data.items()}
