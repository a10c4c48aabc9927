"""Error taxonomy for the workflow engine.

Every error carries the HTTP status the API layer answers with and an
optional ``details`` mapping that is merged into the response body, so
callers can see e.g. the current status of the unit they tried to move.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class ColonyError(Exception):
    """Base class for engine errors."""

    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class NotFoundError(ColonyError, LookupError):
    """Unknown identifier."""

    status_code = 404

    def __init__(self, entity: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(f"{entity} not found", details)
        self.entity = entity


class PreconditionError(ColonyError, ValueError):
    """Requested transition does not fit the unit's current state."""

    status_code = 400

    def __init__(
        self,
        message: str,
        current_status: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        details = dict(details or {})
        if current_status is not None:
            details.setdefault("current_status", current_status)
        super().__init__(message, details)
        self.current_status = current_status


class ClaimConflictError(PreconditionError):
    """The unit exists but is no longer claimable."""

    status_code = 409


class AgentMismatchError(ColonyError):
    """Claim attempted by an agent the unit is not assigned to."""

    status_code = 403


class InvalidInputError(ColonyError, ValueError):
    """Missing or malformed request field."""

    status_code = 400


class MaxRetriesExceededError(ColonyError):
    """Retry counter already at its maximum."""

    status_code = 400

    def __init__(self, details: Optional[Dict[str, Any]] = None):
        super().__init__("Maximum retries exceeded", details)


class UnsupportedPolicyError(InvalidInputError):
    """Loop completion policy other than ``all_done``."""


class StoriesPayloadError(ColonyError, ValueError):
    """Embedded STORIES_JSON payload cannot be used."""

    status_code = 400


class StoriesParseError(StoriesPayloadError):
    """STORIES_JSON is not a valid list of story objects."""


class StoriesLimitError(StoriesPayloadError):
    """STORIES_JSON holds more stories than allowed."""
