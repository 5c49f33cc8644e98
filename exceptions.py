"""
Exception classes for the matching engine.

Entry points catch these per entity and fold them into structured results;
only the HTTP and CLI layers turn them into responses.
"""

from typing import Optional, Any


class CommuteError(Exception):
    """Base exception for all matching engine errors."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to a dictionary for API responses."""
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


class BadRequestError(CommuteError):
    """Request payload is missing a field or has the wrong shape."""

    pass


class NotFoundError(CommuteError):
    """Resource not found."""

    pass


class InvalidOptInError(CommuteError):
    """Opt-in is malformed or cannot be used for matching."""

    pass


class OptInConflictError(CommuteError):
    """An opt-in in the group was consumed by a concurrent run."""

    def __init__(self, opt_in_ids: list[int]):
        super().__init__(
            f"Opt-ins no longer pending: {sorted(opt_in_ids)}",
            details={"opt_in_ids": sorted(opt_in_ids)},
        )
        self.opt_in_ids = sorted(opt_in_ids)


class InvariantViolationError(CommuteError):
    """Committing the group would break a data invariant."""

    pass


class ResponseRejectedError(CommuteError):
    """A participant response is not allowed in the current state."""

    pass


class ScorerError(CommuteError):
    """The external compatibility scorer failed or answered garbage."""

    pass
