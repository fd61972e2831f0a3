"""
API request and response models for the Latchkey REST endpoints.

These Pydantic v2 models define the HTTP transport contract. They are
intentionally separate from the dataclasses in auth/models.py, which own the
internal domain representation. Route handlers map between the two.

Request models only bound sizes. Trimming and semantic checks (email
format, password policy, name length, redirect URL) live in AuthService so
every caller of the core gets them, and they come back as the same
validation_error envelope either way.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import AuthResult, User

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class SignUpRequest(BaseModel):
    """Request body for POST /api/v1/auth/sign-up."""

    name: str = Field(max_length=255)
    email: str = Field(max_length=320)
    # Never trimmed anywhere -- whitespace is part of the secret.
    password: str = Field(max_length=1024, json_schema_extra={"format": "password"})
    confirm_password: Optional[str] = Field(default=None, max_length=1024)


class SignInRequest(BaseModel):
    """Request body for POST /api/v1/auth/sign-in."""

    email: str = Field(max_length=320)
    password: str = Field(max_length=1024)


class ForgotPasswordRequest(BaseModel):
    """Request body for POST /api/v1/auth/forgot-password.

    redirect_base_url is the page that will receive ?token=... -- the front
    end's reset-password route.
    """

    email: str = Field(max_length=320)
    redirect_base_url: str = Field(max_length=2048)


class ResetPasswordRequest(BaseModel):
    """Request body for POST /api/v1/auth/reset-password."""

    token: str = Field(max_length=2048)
    new_password: str = Field(max_length=1024)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    """Public view of an account. Never includes the password hash."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    email: str
    created_at: str

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(id=user.id, name=user.name, email=user.email, created_at=user.created_at.isoformat())


class SessionResponse(BaseModel):
    """Response for sign-up and sign-in."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "bearer"
    expires_at: str
    user: UserResponse

    @classmethod
    def from_result(cls, result: AuthResult) -> "SessionResponse":
        return cls(
            access_token=result.session.token,
            expires_at=result.session.expires_at.isoformat(),
            user=UserResponse.from_user(result.user),
        )


class MessageResponse(BaseModel):
    """Generic acknowledgement for forgot-password, reset-password, sign-out."""

    model_config = ConfigDict(frozen=True)

    message: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload. code is the failure kind."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
