"""Session cookie helpers shared by the routers."""

from __future__ import annotations

from fastapi import HTTPException, Request, Response, status

from config.settings import Settings
from src.core.types import AuthFailure
from src.saas.sessions import SessionKind

_FAILURE_STATUS = {
    AuthFailure.UNAUTHENTICATED: (status.HTTP_401_UNAUTHORIZED, "Not authenticated"),
    AuthFailure.TOKEN_REPLAY: (status.HTTP_401_UNAUTHORIZED, "Token already used"),
    AuthFailure.UNAVAILABLE: (status.HTTP_503_SERVICE_UNAVAILABLE, "Session store unavailable"),
}


def read_session_id(request: Request, kind: SessionKind) -> str | None:
    """Session id from the kind's cookie, falling back to a Bearer header.

    The header fallback only accepts ids carrying this kind's prefix, so one
    header cannot be replayed against another kind's guard.
    """
    session_id = request.cookies.get(kind.cookie)
    if session_id:
        return session_id

    auth_header = request.headers.get("authorization", "")
    if auth_header.startswith("Bearer "):
        candidate = auth_header[7:]
        if candidate.startswith(kind.prefix):
            return candidate
    return None


def set_session_cookie(
    response: Response, kind: SessionKind, session_id: str, settings: Settings
) -> None:
    response.set_cookie(
        key=kind.cookie,
        value=session_id,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
        max_age=kind.max_age_seconds,
        path="/",
    )


def clear_session_cookie(response: Response, kind: SessionKind) -> None:
    response.delete_cookie(key=kind.cookie, path="/")


def failure_to_http(failure: AuthFailure) -> HTTPException:
    code, detail = _FAILURE_STATUS[failure]
    return HTTPException(status_code=code, detail=detail)
