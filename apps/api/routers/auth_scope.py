"""Caller authentication for ledger routes.

End users present a Bearer session token scoped to ledger operations; the
payment pipeline and schedulers present the shared service token instead.
"""

import hmac
from typing import Callable, Optional

from fastapi import Depends, Header, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from config import settings
from services.session_token import SessionClaims, decode_session_token


auth_scheme = HTTPBearer(auto_error=False)


def ensure_user_scope(session: SessionClaims, supplied_external_id: Optional[str]) -> str:
    """Return the session's identity; a request naming another user is refused."""
    if supplied_external_id and supplied_external_id != session.external_id:
        raise HTTPException(status_code=403, detail="external_id does not match authenticated session.")
    return session.external_id


async def get_session(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> SessionClaims:
    if not credentials or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Missing Bearer session token.")
    try:
        return decode_session_token(credentials.credentials)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc


def require_scope(scope: str) -> Callable[..., SessionClaims]:
    """Dependency admitting sessions whose token grants ``scope``."""

    async def _dependency(session: SessionClaims = Depends(get_session)) -> SessionClaims:
        if not session.allows(scope):
            raise HTTPException(status_code=403, detail=f"Session token lacks the {scope} scope.")
        return session

    return _dependency


async def require_service_token(
    x_service_token: Optional[str] = Header(default=None),
) -> None:
    """Gate server-to-server routes (payment confirmation, webhook, renewals)."""
    expected = (settings.SERVICE_TOKEN or "").strip()
    supplied = (x_service_token or "").strip()
    if not expected or not supplied or not hmac.compare_digest(supplied, expected):
        raise HTTPException(status_code=401, detail="Unauthorized. Service token required.")
