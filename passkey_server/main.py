# passkey_server/main.py
#
# -----------------------------------------------------------------------------
# Architectural notes (high level)
# -----------------------------------------------------------------------------
# This file is intentionally "thin" orchestration glue:
#   - It wires HTTP endpoints to the ceremony/session primitives.
#   - It MUST NOT implement crypto itself (secret.py, challenge.py, and the
#     WebAuthn library behind verifier.py own that).
#   - It keeps no state of its own: users, credentials and sessions live in the
#     key-value store; challenge state travels inside the challenge itself.
#
# Key modules / responsibilities:
#   - config.py     : environment-driven settings (RP_ID/ORIGINS/SECRET/store)
#   - secret.py     : HMAC derivations (user ids, CSRF tokens)
#   - challenge.py  : self-verifying challenge codec
#   - kv.py         : key-value backends (memory, Redis)
#   - storage.py    : users/credentials/sessions over the key-value store
#   - verifier.py   : py_webauthn adapter
#   - ceremony.py   : registration/authentication flows
#   - session.py    : session cookie + CSRF gate
#   - audit.py      : append-only audit trail (security telemetry, forensics)
#
# Error surface:
#   - CeremonyError            -> 400 {"error": true, "message": ...}
#   - StoreUnavailable / other -> 500 {"error": true, "message": "Internal error"}
#   Verifier detail is logged, never returned.
# -----------------------------------------------------------------------------

import logging
from pathlib import Path
from typing import Optional

from fastapi import Depends, FastAPI, Form, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import HTMLResponse, JSONResponse, PlainTextResponse, RedirectResponse
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates

from .audit import build_common, get_audit_log
from .ceremony import CeremonyService
from .challenge import b64url_decode, b64url_encode
from .config import settings
from .errors import CeremonyError, StoreUnavailable
from .models import AuthenticationSubmit, RegistrationSubmit
from .secret import derive_csrf_token, get_secret_key, timing_safe_equal
from .session import check_csrf, clear_session_cookie, get_session_id, set_session_cookie
from .storage import DataSource, get_data_source
from .verifier import get_verifier

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# -----------------------------------------------------------------------------
# Crypto root
# -----------------------------------------------------------------------------
# Imported once at startup so a bad SECRET stops the process before it serves.
SECRET_KEY = get_secret_key()

# -----------------------------------------------------------------------------
# FastAPI application
# -----------------------------------------------------------------------------
app = FastAPI(
    title="Passkey Server",
    version="0.1.0",
)

BASE_DIR = Path(__file__).resolve().parent
templates = Jinja2Templates(directory=str(BASE_DIR / "templates"))

# Static assets (CSS / JS)
app.mount(
    "/static",
    StaticFiles(directory=str(BASE_DIR / "static")),
    name="static",
)


# -----------------------------------------------------------------------------
# Dependencies
# -----------------------------------------------------------------------------
def get_ceremony(
    data: DataSource = Depends(get_data_source),
    verifier=Depends(get_verifier),
) -> CeremonyService:
    return CeremonyService(
        data,
        verifier,
        SECRET_KEY,
        challenge_ttl_ms=settings.CHALLENGE_TTL_SECONDS * 1000,
        timeout_ms=settings.CEREMONY_TIMEOUT_MS,
    )


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def _flag(value: Optional[str]) -> bool:
    # an absent or empty value is off; 0/false/no/off are off too
    value = (value or "").strip().lower()
    return bool(value) and value not in ("0", "false", "no", "off")


def _api_error(e: CeremonyError) -> JSONResponse:
    return JSONResponse({"error": True, "message": e.message}, status_code=400)


def _audit(request: Request, **fields) -> None:
    get_audit_log().append(
        build_common(
            request_ip=(request.client.host if request.client else None),
            user_agent=request.headers.get("user-agent"),
            **fields,
        )
    )


# -----------------------------------------------------------------------------
# Error handlers
# -----------------------------------------------------------------------------
@app.exception_handler(RequestValidationError)
async def validation_error(request: Request, exc: RequestValidationError):
    return JSONResponse({"error": True, "message": "Invalid request"}, status_code=400)


@app.exception_handler(StoreUnavailable)
async def store_unavailable(request: Request, exc: StoreUnavailable):
    logger.error("Store unavailable during %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse({"error": True, "message": "Internal error"}, status_code=500)


@app.exception_handler(Exception)
async def internal_error(request: Request, exc: Exception):
    logger.exception("Unhandled error during %s %s", request.method, request.url.path)
    return JSONResponse({"error": True, "message": "Internal error"}, status_code=500)


# -----------------------------------------------------------------------------
# Web UI
# -----------------------------------------------------------------------------
@app.get("/", response_class=HTMLResponse)
def home(request: Request, data: DataSource = Depends(get_data_source)):
    session_id = get_session_id(request)
    session = data.find_session(session_id) if session_id else None
    user = data.find_user_by_user_id(session.user_id) if session else None

    if not user:
        return templates.TemplateResponse(request, "home_anonymous.html", {"rp_name": settings.RP_NAME})

    credentials = data.find_credentials_for_user_id(user.user_id)
    return templates.TemplateResponse(
        request,
        "home.html",
        {
            "rp_name": settings.RP_NAME,
            "username": user.username,
            "csrf": derive_csrf_token(SECRET_KEY, session.session_id),
            "credentials": [
                {
                    "id": b64url_encode(c.credential_id),
                    "user_verified": c.user_verified,
                    "sign_count": c.sign_count,
                    "transports": c.transports,
                }
                for c in credentials
            ],
        },
    )


@app.get("/register", response_class=HTMLResponse)
def register_page(request: Request):
    return templates.TemplateResponse(request, "register.html", {"rp_name": settings.RP_NAME})


@app.get("/sign-in", response_class=HTMLResponse)
def sign_in_page(request: Request):
    return templates.TemplateResponse(request, "sign_in.html", {"rp_name": settings.RP_NAME})


# -----------------------------------------------------------------------------
# Registration API
# -----------------------------------------------------------------------------
@app.post("/registration/options")
def registration_options(
    request: Request,
    username: Optional[str] = None,
    passkey: Optional[str] = None,
    ceremony: CeremonyService = Depends(get_ceremony),
):
    try:
        return ceremony.registration_options(
            session_id=get_session_id(request),
            username=username,
            passkey=_flag(passkey),
        )
    except CeremonyError as e:
        return _api_error(e)


@app.post("/registration/submit")
def registration_submit(
    request: Request,
    body: RegistrationSubmit,
    ceremony: CeremonyService = Depends(get_ceremony),
):
    try:
        outcome = ceremony.register(
            session_id=get_session_id(request),
            username=body.username,
            response=body.response,
            transports=body.transports,
        )
    except CeremonyError as e:
        _audit(request, event="registration", result="denied", reason=e.reason, username=body.username)
        return _api_error(e)

    _audit(
        request,
        event="registration",
        result="approved",
        username=outcome.user.username,
        user_id=outcome.user.user_id,
        credential_id=outcome.credential.credential_id,
    )

    response = JSONResponse({"status": "OK"})
    if outcome.new_session:
        set_session_cookie(response, outcome.new_session.session_id, settings.secure_cookies)
    return response


# -----------------------------------------------------------------------------
# Authentication API
# -----------------------------------------------------------------------------
@app.post("/authentication/options")
def authentication_options(
    username: Optional[str] = None,
    ceremony: CeremonyService = Depends(get_ceremony),
):
    try:
        return ceremony.authentication_options(username=username)
    except CeremonyError as e:
        return _api_error(e)


@app.post("/authentication/submit")
def authentication_submit(
    request: Request,
    body: AuthenticationSubmit,
    ceremony: CeremonyService = Depends(get_ceremony),
):
    try:
        outcome = ceremony.authenticate(
            session_id=get_session_id(request),
            username=body.username,
            response=body.response,
        )
    except CeremonyError as e:
        _audit(request, event="authentication", result="denied", reason=e.reason, username=body.username)
        return _api_error(e)

    _audit(
        request,
        event="authentication",
        result="approved",
        username=outcome.user.username,
        user_id=outcome.user.user_id,
        credential_id=outcome.credential.credential_id,
    )

    response = JSONResponse({"status": "OK"})
    set_session_cookie(response, outcome.session.session_id, settings.secure_cookies)
    return response


# -----------------------------------------------------------------------------
# CSRF-gated forms
# -----------------------------------------------------------------------------
@app.post("/sign-out")
def sign_out(
    request: Request,
    csrf: Optional[str] = Form(None),
    data: DataSource = Depends(get_data_source),
):
    session_id = get_session_id(request)
    if not session_id:
        return RedirectResponse("/", status_code=302)

    try:
        check_csrf(SECRET_KEY, session_id, csrf)
    except CeremonyError as e:
        _audit(request, event="sign_out", result="denied", reason=e.reason)
        return PlainTextResponse(e.message, status_code=400)

    data.delete_session(session_id)
    _audit(request, event="sign_out", result="approved")

    response = RedirectResponse("/", status_code=302)
    clear_session_cookie(response)
    return response


@app.post("/credentials/revoke")
def revoke_credential(
    request: Request,
    csrf: Optional[str] = Form(None),
    credential_id: Optional[str] = Form(None),
    data: DataSource = Depends(get_data_source),
):
    session_id = get_session_id(request)
    session = data.find_session(session_id) if session_id else None
    if not session:
        return RedirectResponse("/", status_code=302)

    try:
        check_csrf(SECRET_KEY, session.session_id, csrf)
    except CeremonyError as e:
        _audit(request, event="credential_revoked", result="denied", reason=e.reason, user_id=session.user_id)
        return PlainTextResponse(e.message, status_code=400)

    try:
        raw_id = b64url_decode(credential_id or "")
    except ValueError:
        return PlainTextResponse("Bad credential id", status_code=400)

    # only the owner may revoke; anything else looks like an unknown id
    credential = data.find_credential_by_id(raw_id) if raw_id else None
    if credential is None or not timing_safe_equal(credential.user_id, session.user_id):
        return PlainTextResponse("Unknown credential", status_code=404)

    data.delete_credential(raw_id)
    _audit(
        request,
        event="credential_revoked",
        result="approved",
        user_id=session.user_id,
        credential_id=raw_id,
    )
    return RedirectResponse("/", status_code=302)
