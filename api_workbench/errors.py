"""Domain errors.

Only local precondition violations are raised. A remote call that did not
succeed is returned as a failed ExecutionResponse, never raised.
"""

from __future__ import annotations

from typing import Any


class DomainError(Exception):
    """Base class for api-workbench domain errors."""


class ApiExecutionError(DomainError):
    """Raised when a request cannot be dispatched (no network attempt made)."""


class InvalidRequestError(ApiExecutionError):
    """Raised for a malformed URL or an inconsistent request definition."""


class AuthConfigurationError(ApiExecutionError):
    """Raised when the selected auth kind is missing required fields."""


class EntityNotFoundError(DomainError):
    """Raised when a referenced request, environment, collection or history id does not exist."""

    def __init__(self, entity_name: str, entity_id: Any) -> None:
        super().__init__(f"{entity_name} not found with id: {entity_id}")
        self.entity_name = entity_name
        self.entity_id = entity_id
