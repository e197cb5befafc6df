"""
API request and response models for TenantGate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.

Field limits follow the account rules of the user directory: email at most
100 characters, passwords 6 to 100 characters, names 2 to 100 characters.
"""

from enum import Enum
from typing import Annotated, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, EmailStr, Field

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class TierEnum(str, Enum):
    root = "root"
    admin = "admin"
    user = "user"


class LevelEnum(str, Enum):
    read = "read"
    write = "write"
    update = "update"
    delete = "delete"


MAX_EMAIL_LENGTH = 100


def _check_email_length(value: str) -> str:
    if len(value) > MAX_EMAIL_LENGTH:
        raise ValueError(f"email must be at most {MAX_EMAIL_LENGTH} characters")
    return value.lower()


# EmailStr validates the syntax; the length rule and lower-casing run after it.
_Email = Annotated[EmailStr, AfterValidator(_check_email_length)]
_Password = Annotated[str, Field(min_length=6, max_length=100)]


# ---------------------------------------------------------------------------
# Auth -- request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: _Email
    password: str = Field(min_length=1, max_length=100)


class RefreshRequest(BaseModel):
    """Request body for POST /api/v1/auth/refresh-token."""

    model_config = ConfigDict(str_strip_whitespace=True)

    refresh_token: str = Field(min_length=1, max_length=2048)


class ForgotPasswordRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: _Email


class ResetPasswordRequest(BaseModel):
    """Request body for POST /api/v1/auth/reset-password and /first-login."""

    token: str = Field(min_length=1, max_length=100)
    new_password: _Password


# ---------------------------------------------------------------------------
# Auth -- response models
# ---------------------------------------------------------------------------


class PrincipalResponse(BaseModel):
    """Safe view of a principal. Never carries the password hash."""

    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    name: str
    tier: TierEnum
    tenant_id: Optional[str] = None
    first_login: bool
    is_active: bool
    created_at: Optional[str] = None
    last_login: Optional[str] = None


class TokenPairResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"


class LoginResponse(BaseModel):
    """Response for POST /api/v1/auth/login and /first-login."""

    model_config = ConfigDict(frozen=True)

    user: PrincipalResponse
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    first_login: bool


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class LogoutResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    sessions_revoked: int


# ---------------------------------------------------------------------------
# Principals and tenants
# ---------------------------------------------------------------------------


class UserCreate(BaseModel):
    """Request body for POST /api/v1/users.

    The new principal starts with first_login=true and an unusable random
    password; it sets its own through the activation email.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    email: _Email
    name: str = Field(min_length=2, max_length=100)
    tier: TierEnum = TierEnum.user
    tenant_id: Optional[str] = Field(default=None, max_length=36)


class UserUpdate(BaseModel):
    """Request body for PATCH /api/v1/users/{user_id}."""

    is_active: Optional[bool] = None
    deleted: Optional[bool] = Field(default=None, description="true soft-deletes the principal.")


class TenantCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=255)


class TenantResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    is_active: bool
    created_at: Optional[str] = None


class ApplicationSubscribe(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    application_id: str = Field(min_length=1, max_length=36)


class TenantApplicationsResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    tenant_id: str
    application_ids: list[str]


# ---------------------------------------------------------------------------
# Permissions and grants
# ---------------------------------------------------------------------------


class PermissionCreate(BaseModel):
    """Request body for POST /api/v1/permissions."""

    model_config = ConfigDict(str_strip_whitespace=True)

    function_name: str = Field(min_length=1, max_length=100)
    permission_level: LevelEnum
    display_name: str = Field(min_length=1, max_length=255)
    application_id: str = Field(min_length=1, max_length=36)
    description: Optional[str] = Field(default=None, max_length=1000)


class PermissionUpdate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    display_name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=1000)


class PermissionResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    function_name: str
    permission_level: str
    display_name: str
    description: Optional[str] = None
    application_id: str


class GrantRequest(BaseModel):
    """Request body for POST /api/v1/user-permissions/grant and /revoke."""

    user_id: str = Field(min_length=1, max_length=36)
    permission_id: str = Field(min_length=1, max_length=36)


class GrantResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    permission_id: str
    granted: bool
    granted_by: Optional[str] = None


class SetPermissionsRequest(BaseModel):
    permission_ids: list[str] = Field(max_length=200)


class PermissionEntry(BaseModel):
    function_name: str = Field(min_length=1, max_length=100)
    permission_level: str = Field(min_length=1, max_length=20)


class ValidatePermissionsRequest(BaseModel):
    permissions: list[PermissionEntry] = Field(max_length=200)


class ValidatePermissionsResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    valid: bool
    errors: list[str] = Field(default_factory=list)


class DecisionResponse(BaseModel):
    """Result of a permission check. Carries no reason: reasons stay server-side."""

    model_config = ConfigDict(frozen=True)

    allowed: bool


# ---------------------------------------------------------------------------
# Error and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Structured error detail included in every error response."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Standard error envelope returned by all exception handlers."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=lambda: {"app": "ok", "database": "ok"})
