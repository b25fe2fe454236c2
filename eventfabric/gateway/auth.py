from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Protocol, Sequence

import jwt

from eventfabric.core.errors import AuthError


@dataclass(frozen=True)
class Claims:
    subject: str
    expires_at: datetime
    raw: Dict[str, Any] = field(default_factory=dict, compare=False)


class CredentialVerifier(Protocol):
    def verify(self, token: str) -> Claims:
        """Raises AuthError (reason invalid/expired)."""
        ...


class JwtVerifier:
    """Bearer JWT verification (signature + expiry). Issuance lives in the users service."""

    def __init__(
        self,
        secret: str,
        *,
        algorithms: Sequence[str] = ("HS256",),
        leeway_seconds: int = 0,
        audience: Optional[str] = None,
    ) -> None:
        if not secret:
            raise ValueError("jwt secret must be configured")
        self._secret = secret
        self._algorithms = list(algorithms)
        self._leeway = leeway_seconds
        self._audience = audience

    def verify(self, token: str) -> Claims:
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=self._algorithms,
                audience=self._audience,
                leeway=self._leeway,
                options={"require": ["exp", "sub"]},
            )
        except jwt.ExpiredSignatureError as e:
            raise AuthError(AuthError.EXPIRED, "credential expired") from e
        except jwt.InvalidTokenError as e:
            raise AuthError(AuthError.INVALID, f"credential invalid: {e}") from e

        return Claims(
            subject=str(payload["sub"]),
            expires_at=datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc),
            raw=payload,
        )


def bearer_token(headers: Mapping[str, str]) -> Optional[str]:
    """Token from `Authorization: Bearer <token>`; headers keyed lower-case."""
    authorization = headers.get("authorization")
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthError(AuthError.INVALID, "invalid authorization header format")
    return token.strip()
