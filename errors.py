"""Error taxonomy for the token queue.

Every error carries the HTTP status the API layer should answer with, so
routes stay thin and the exception handler in ``main`` does the mapping.
"""

from __future__ import annotations


class QueueError(Exception):
    """Base class for all queue errors."""

    status_code = 500


class NotFound(QueueError):
    """Clinic, session or token state does not exist (or is not active)."""

    status_code = 404


class ValidationError(QueueError):
    """Input that would break a token state invariant."""

    status_code = 422


class PersistenceError(QueueError):
    """The store is unavailable or rejected the write.  Nothing was applied."""

    status_code = 503


class SubscriptionError(QueueError):
    """A change channel could not be established."""

    status_code = 503


class Forbidden(QueueError):
    """The caller's role may not perform the action."""

    status_code = 403
