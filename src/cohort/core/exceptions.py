"""
Cohort exception hierarchy.

All cohort exceptions inherit from CohortError, making it easy for consumers
to catch library-level errors while still distinguishing specific failure modes.
Each class carries the HTTP status the controller layer should surface.
"""


class CohortError(Exception):
    """Base exception class for all cohort errors."""

    http_status = 500


class ConfigurationError(CohortError):
    """Raised for configuration errors (missing keys, invalid values)."""


class BadRequestError(CohortError):
    """Raised for malformed client input: bad time windows, missing ids, oversized payloads."""

    http_status = 400

    def __init__(self, message: str, errors: dict[str, list[str]] | None = None):
        super().__init__(message)
        self.errors = errors or {}


class EntityNotFoundError(CohortError):
    """Raised when a referenced survey, schema, compound activity or participant does not exist."""

    http_status = 404

    def __init__(self, entity_type: str, entity_id: str = "", message: str | None = None):
        super().__init__(message or f"{entity_type} not found: {entity_id}")
        self.entity_type = entity_type
        self.entity_id = entity_id


class ConcurrentModificationError(CohortError):
    """Raised when a distributed lock is already held by another worker."""

    http_status = 409


class StoreError(CohortError):
    """Raised when the backing activity store fails."""

    http_status = 503


class RecomputeAbortedError(CohortError):
    """Raised when a recompute gives up after exhausting its retry budget."""
