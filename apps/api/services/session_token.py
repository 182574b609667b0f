"""Ledger session tokens.

The identity front end verifies the user and mints a token whose subject is
the auth provider's opaque user id. The ``scope`` claim (space separated, as
in OAuth) limits which ledger operations the bearer may perform, and the
audience pins the token to this service.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, FrozenSet, Iterable, Optional

from jose import JWTError, jwt

from config import settings


SESSION_TOKEN_TYPE = "ledger_session"
SESSION_AUDIENCE = "subscription-ledger"

SCOPE_LEDGER_READ = "ledger:read"
SCOPE_USAGE_CONSUME = "usage:consume"
SCOPE_SUBSCRIPTION_CANCEL = "subscription:cancel"
SCOPE_ACCOUNT_MANAGE = "account:manage"
KNOWN_SCOPES = frozenset(
    {SCOPE_LEDGER_READ, SCOPE_USAGE_CONSUME, SCOPE_SUBSCRIPTION_CANCEL, SCOPE_ACCOUNT_MANAGE}
)


@dataclass(frozen=True)
class SessionClaims:
    external_id: str
    scopes: FrozenSet[str]
    email: Optional[str]
    expires_at: datetime

    def allows(self, scope: str) -> bool:
        return scope in self.scopes


def create_session_token(
    external_id: str,
    email: Optional[str] = None,
    expires_hours: Optional[int] = None,
    scopes: Optional[Iterable[str]] = None,
) -> Dict[str, Any]:
    """Sign a token for ``external_id``; every known scope is granted by default."""
    granted = frozenset(scopes) if scopes is not None else KNOWN_SCOPES
    unknown = granted - KNOWN_SCOPES
    if unknown:
        raise ValueError(f"Unknown session scopes: {', '.join(sorted(unknown))}")

    issued_at = datetime.now(timezone.utc)
    lifetime = timedelta(hours=max(int(expires_hours or settings.JWT_EXPIRATION_HOURS or 24), 1))
    expires_at = int((issued_at + lifetime).timestamp())
    claims: Dict[str, Any] = {
        "sub": external_id,
        "aud": SESSION_AUDIENCE,
        "typ": SESSION_TOKEN_TYPE,
        "scope": " ".join(sorted(granted)),
        "iat": int(issued_at.timestamp()),
        "exp": expires_at,
    }
    if email:
        claims["email"] = email

    return {
        "token": jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM),
        "expires_at": expires_at,
        "scopes": sorted(granted),
    }


def decode_session_token(token: str) -> SessionClaims:
    """Verify signature, expiry and audience, then return the ledger claims."""
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
            audience=SESSION_AUDIENCE,
        )
    except JWTError as exc:
        raise ValueError("Invalid or expired session token.") from exc

    if payload.get("typ") != SESSION_TOKEN_TYPE:
        raise ValueError("Invalid session token type.")
    external_id = str(payload.get("sub") or "").strip()
    if not external_id:
        raise ValueError("Session token missing subject.")

    return SessionClaims(
        external_id=external_id,
        scopes=frozenset(str(payload.get("scope") or "").split()) & KNOWN_SCOPES,
        email=payload.get("email") or None,
        expires_at=datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc),
    )
