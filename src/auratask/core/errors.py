# src/auratask/core/errors.py

from __future__ import annotations


class AuraTaskError(Exception):
    """Base class for every error the store surfaces."""


class ValidationFailure(AuraTaskError):
    """Input rejected before any I/O (empty title, out-of-range score, ...)."""


class AuthFailure(AuraTaskError):
    """No identity is available for an operation that needs one."""


class PersistenceFailure(AuraTaskError):
    """A backend gateway call was rejected or could not be delivered."""

    def __init__(self, message: str, *, table: str | None = None) -> None:
        super().__init__(message)
        self.table = table


class EnrichmentFailure(AuraTaskError):
    """The task analyzer failed. Never fatal for the surrounding action."""


class MigrationFailure(AuraTaskError):
    """Guest -> user data migration failed."""
