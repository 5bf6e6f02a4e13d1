from fastapi import HTTPException, status

from ..domain.errors import (
    AlreadySignedUpError,
    CapacityExhaustedError,
    DomainError,
    InvalidArgumentError,
    NotFoundError,
    OrderCreationError,
    PermissionDeniedError,
    SignUpRetriesExhaustedError,
    SignUpsClosedError,
    SignUpsDisabledError,
    SignUpsNotOpenError,
    VersionConflictError,
)

_STATUS_BY_ERROR: list[tuple[type[DomainError], int]] = [
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (PermissionDeniedError, status.HTTP_403_FORBIDDEN),
    (SignUpsDisabledError, status.HTTP_409_CONFLICT),
    (SignUpsNotOpenError, status.HTTP_409_CONFLICT),
    (SignUpsClosedError, status.HTTP_409_CONFLICT),
    (InvalidArgumentError, status.HTTP_400_BAD_REQUEST),
    (AlreadySignedUpError, status.HTTP_409_CONFLICT),
    (CapacityExhaustedError, status.HTTP_409_CONFLICT),
    (VersionConflictError, status.HTTP_409_CONFLICT),
    (SignUpRetriesExhaustedError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (OrderCreationError, status.HTTP_502_BAD_GATEWAY),
]


def to_http_exception(exc: DomainError) -> HTTPException:
    for error_cls, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_cls):
            headers = {"Retry-After": "1"} if status_code == status.HTTP_503_SERVICE_UNAVAILABLE else None
            return HTTPException(status_code=status_code, detail=str(exc), headers=headers)
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="internal error")
