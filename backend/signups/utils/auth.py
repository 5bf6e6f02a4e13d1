from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Sequence

import jwt
from jwt import InvalidTokenError

DEFAULT_TOKEN_LIFETIME = timedelta(minutes=30)


def create_access_token(
    *,
    user_id: int,
    secret: str,
    algorithm: str = "HS256",
    expires_delta: timedelta | None = None,
    extra_claims: Mapping[str, Any] | None = None,
) -> str:
    """Issue a bearer token for a user. Used by tests and local tooling."""
    issued_at = datetime.now(timezone.utc)
    claims: dict[str, Any] = dict(extra_claims or {})
    claims.update(
        sub=str(user_id),
        iat=issued_at,
        exp=issued_at + (expires_delta or DEFAULT_TOKEN_LIFETIME),
    )
    return jwt.encode(claims, secret, algorithm=algorithm)


def decode_access_token(
    token: str,
    *,
    secret: str,
    algorithms: Sequence[str],
) -> int:
    """Return the user id carried in `sub`. Raises ValueError for any unusable token."""
    try:
        claims = jwt.decode(
            token,
            secret,
            algorithms=list(algorithms),
            options={"require": ["exp", "sub"]},
        )
    except InvalidTokenError as exc:
        raise ValueError("invalid token") from exc

    try:
        return int(claims["sub"])
    except (TypeError, ValueError) as exc:
        raise ValueError("token subject is not a user id") from exc
