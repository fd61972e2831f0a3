"""
api/routes/v1/auth.py -- Authentication REST endpoints.

Routes:
  POST /api/v1/auth/sign-up          -- create account; sets session cookie; 201
  POST /api/v1/auth/sign-in          -- password login; sets session cookie
  POST /api/v1/auth/forgot-password  -- email a reset link (if the account exists); 202
  POST /api/v1/auth/reset-password   -- redeem reset token; revokes all sessions
  POST /api/v1/auth/sign-out         -- revoke current session; clears cookie
  GET  /api/v1/auth/me               -- current user (requires session)

Security:
  POST /sign-in and /forgot-password are rate-limited per IP (settings).
  Sign-in failures always answer invalid_credentials, whichever check failed.
  Forgot-password answers 202 with the same body for known and unknown emails.
  Cache-Control: no-store on every response that carries a session token.

Errors raised by AuthService are AuthError subclasses; api/main.py maps
them to status codes and the shared error envelope, so handlers here stay
on the happy path.

Handlers are plain def so FastAPI runs them in its thread pool -- the
argon2 step blocks for tens of milliseconds and must not stall the event
loop.
"""

from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import forgot_password_limit, limiter, sign_in_limit
from api.models import (
    ForgotPasswordRequest,
    MessageResponse,
    ResetPasswordRequest,
    SessionResponse,
    SignInRequest,
    SignUpRequest,
    UserResponse,
)
from auth.dependencies import get_current_user, get_request_token
from auth.models import AuthResult, User
from auth.service import AuthService
from auth.tokens import set_auth_cookie

# Auth policy:
# - POST /api/v1/auth/sign-up:          public
# - POST /api/v1/auth/sign-in:          public, rate-limited
# - POST /api/v1/auth/forgot-password:  public, rate-limited
# - POST /api/v1/auth/reset-password:   public -- the reset token is the credential
# - POST /api/v1/auth/sign-out:         public -- revoking an unknown token is a no-op
# - GET  /api/v1/auth/me:               requires session (get_current_user)
router = APIRouter()

_FORGOT_ACK = "If an account with that email exists, a reset link has been sent."


def _service(request: Request) -> AuthService:
    return request.app.state.auth_service


def _session_response(request: Request, result: AuthResult, status_code: int) -> JSONResponse:
    settings = _service(request).settings
    resp = JSONResponse(
        status_code=status_code,
        content=SessionResponse.from_result(result).model_dump(),
    )
    set_auth_cookie(resp, result.session.token, max_age=settings.session_ttl_seconds, secure=settings.secure_cookies)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/auth/sign-up", response_model=SessionResponse, status_code=201)
def sign_up(request: Request, body: SignUpRequest) -> JSONResponse:
    """Create an account and start a session for it."""
    result = _service(request).sign_up(body.name, body.email, body.password, body.confirm_password)
    return _session_response(request, result, status_code=201)


@router.post("/auth/sign-in", response_model=SessionResponse)
@limiter.limit(sign_in_limit)  # below @router so the registered endpoint is the limited wrapper
def sign_in(request: Request, body: SignInRequest) -> JSONResponse:
    """Authenticate with email and password; set the session cookie."""
    result = _service(request).sign_in(body.email, body.password)
    return _session_response(request, result, status_code=200)


@router.post("/auth/forgot-password", response_model=MessageResponse, status_code=202)
@limiter.limit(forgot_password_limit)
def forgot_password(request: Request, body: ForgotPasswordRequest, background_tasks: BackgroundTasks) -> MessageResponse:
    """Send a password reset link if the email belongs to an account.

    Delivery runs as a background task after the response is sent, so a slow
    or failing email provider never affects this request.
    """
    _service(request).forgot_password(body.email, body.redirect_base_url, defer=background_tasks.add_task)
    return MessageResponse(message=_FORGOT_ACK)


@router.post("/auth/reset-password", response_model=MessageResponse)
def reset_password(request: Request, body: ResetPasswordRequest) -> JSONResponse:
    """Set a new password using a reset token. Every existing session is revoked."""
    _service(request).reset_password(body.token, body.new_password)
    resp = JSONResponse(content=MessageResponse(message="Your password has been reset.").model_dump())
    resp.delete_cookie("access_token")
    return resp


@router.post("/auth/sign-out", response_model=MessageResponse)
def sign_out(request: Request) -> JSONResponse:
    """Revoke the current session (if any) and clear the cookie."""
    token = get_request_token(request)
    if token:
        _service(request).sign_out(token)
    resp = JSONResponse(content=MessageResponse(message="Signed out.").model_dump())
    resp.delete_cookie("access_token")
    return resp


@router.get("/auth/me", response_model=UserResponse)
def me(current_user: User = Depends(get_current_user)) -> UserResponse:
    """Return the account behind the current session."""
    return UserResponse.from_user(current_user)
