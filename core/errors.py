"""
core/errors.py -- Domain exception taxonomy for SIGRISK.

Three failure classes cross the core boundary:

  NotFound        -- a referenced asset, threat, vulnerability, risk or
                     safeguard does not exist. Propagated, never retried.
  ValidationError -- a numeric field is outside its scale, or input is
                     malformed. Raised before any calculation or write.
  ConflictError   -- a uniqueness or referential rule would be broken
                     (duplicate code, duplicate risk triple outside the
                     upsert path, deleting an asset others depend on).

Layer rule: core/ is the kernel. The API layer maps these to HTTP status
codes; nothing here knows about HTTP.
"""

from typing import Any


class RiskEngineError(Exception):
    """Base class for every error raised deliberately by SIGRISK code."""


class NotFound(RiskEngineError):
    def __init__(self, entity: str, key: Any) -> None:
        self.entity = entity
        self.key = key
        super().__init__(f"{entity} {key} not found")


class ValidationError(RiskEngineError, ValueError):
    """Out-of-range or malformed input.

    Subclasses ValueError so callers that already guard input parsing with
    `except ValueError` keep working.
    """


class ConflictError(RiskEngineError):
    pass
