"""
passkey_server/session.py

Session cookie handling and the CSRF gate for state-changing forms.

The CSRF token is never stored: it is re-derived from the session id
(secret.derive_csrf_token) both when the page is rendered and when the form
comes back.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Request
from fastapi.responses import Response

from .errors import BadCSRF, MissingCSRF
from .secret import SecretKey, csrf_token_matches

SESSION_COOKIE = "session"


def get_session_id(request: Request) -> Optional[str]:
    # Starlette skips unparsable cookie pairs instead of raising.
    return request.cookies.get(SESSION_COOKIE) or None


def set_session_cookie(response: Response, session_id: str, secure: bool) -> None:
    response.set_cookie(
        SESSION_COOKIE,
        session_id,
        httponly=True,
        secure=secure,
        path="/",
    )


def clear_session_cookie(response: Response) -> None:
    response.set_cookie(
        SESSION_COOKIE,
        "",
        expires=datetime.now(timezone.utc) - timedelta(seconds=1),
        httponly=True,
        secure=True,
        path="/",
    )


def check_csrf(key: SecretKey, session_id: str, presented: Optional[str]) -> None:
    """
    Raise unless `presented` is the CSRF token for `session_id`.

    Comparison is constant time; a token of the wrong length is rejected
    without comparing content.
    """
    if not presented or not isinstance(presented, str):
        raise MissingCSRF()
    if not csrf_token_matches(key, session_id, presented):
        raise BadCSRF()
