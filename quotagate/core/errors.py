from __future__ import annotations


class QuotagateError(Exception):
    """Base error for quotagate."""


class DatabaseError(QuotagateError):
    """Database layer failure."""


class StoreUnavailableError(DatabaseError):
    """Durable store could not be reached or rejected the statement."""


class EntitlementStoreUnavailableError(StoreUnavailableError):
    """Entitlement reads/writes failed; admission must fail closed."""


class CustomerRefConflictError(QuotagateError):
    """Payment customer reference already linked to a different principal."""


class UnsupportedDialectError(DatabaseError):
    """Upserts are only implemented for PostgreSQL and SQLite."""


class WebhookVerificationError(QuotagateError):
    """Payment provider webhook signature missing or invalid."""


class WebhookPayloadError(QuotagateError):
    """Payment provider webhook body could not be parsed."""


class RelayError(QuotagateError):
    """Downstream chat relay failed, timed out or returned a server error."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
