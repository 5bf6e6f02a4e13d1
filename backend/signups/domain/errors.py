from __future__ import annotations

from enum import StrEnum


class CapacityScope(StrEnum):
    EVENT = "event"
    SLOT = "slot"


class DomainError(Exception):
    """Base class for errors raised by the sign-up engine."""


class NotFoundError(DomainError):
    pass


class InvalidArgumentError(DomainError):
    pass


class PermissionDeniedError(DomainError):
    pass


class SignUpsDisabledError(InvalidArgumentError):
    pass


class SignUpsNotOpenError(InvalidArgumentError):
    pass


class SignUpsClosedError(InvalidArgumentError):
    pass


class InvalidCapacityError(InvalidArgumentError):
    pass


class AlreadySignedUpError(DomainError):
    pass


class CapacityExhaustedError(DomainError):
    """A conditional decrement matched no row because no capacity is left."""

    def __init__(self, scope: CapacityScope, entity_id: int) -> None:
        super().__init__(f"{scope} {entity_id} has no remaining capacity")
        self.scope = scope
        self.entity_id = entity_id


class VersionConflictError(DomainError):
    """A conditional write lost the race against a concurrent writer."""


class SignUpRetriesExhaustedError(DomainError):
    """Raised when optimistic retries give up; the caller may retry the whole request later."""


class OrderCreationError(DomainError):
    pass


class InternalStateError(DomainError):
    pass
