"""
API request and response models for Warden REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Only typed fields are accepted. Anything shaped differently (a role given as a
string, a list where an int belongs) is rejected here with a 422 before it can
reach the core.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, model_validator

from auth.tokens import MAX_PASSWORD_BYTES

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

PERMISSION_PATTERN = r"^[a-z0-9_]+(\.[a-z0-9_]+)*$"

_PermissionName = Annotated[str, Field(min_length=1, max_length=150, pattern=PERMISSION_PATTERN)]


def _within_bcrypt_limit(value: str) -> str:
    # bcrypt counts bytes, not characters.
    if len(value.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise ValueError(f"password must be at most {MAX_PASSWORD_BYTES} bytes as UTF-8")
    return value


_Password = Annotated[str, Field(min_length=1, max_length=MAX_PASSWORD_BYTES), AfterValidator(_within_bcrypt_limit)]
_NewPassword = Annotated[str, Field(min_length=8, max_length=MAX_PASSWORD_BYTES), AfterValidator(_within_bcrypt_limit)]


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class PolarityEnum(str, Enum):
    grant = "grant"
    revoke = "revoke"


class RiskLevelEnum(str, Enum):
    low = "low"
    medium = "medium"
    high = "high"


# ---------------------------------------------------------------------------
# Shared validation
# ---------------------------------------------------------------------------


class _ValidityWindow(BaseModel):
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None

    @model_validator(mode="after")
    def check_window(self):
        if self.valid_from and self.valid_until and self.valid_until <= self.valid_from:
            raise ValueError("valid_until must be later than valid_from")
        return self


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=1, max_length=255)
    password: _Password
    device_info: dict[str, Any] = Field(default_factory=dict, max_length=20)


class RefreshRequest(BaseModel):
    """Body for POST /api/v1/auth/refresh. refresh_token may instead arrive as a cookie."""

    refresh_token: Optional[str] = Field(default=None, min_length=1, max_length=256)
    session_id: Optional[str] = Field(default=None, max_length=36)


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, min_length=1, max_length=256)


class AuthorizeRequest(BaseModel):
    permission: _PermissionName


class PasswordChangeRequest(BaseModel):
    current_password: _Password
    new_password: _NewPassword


class RoleAssignRequest(_ValidityWindow):
    role_id: int = Field(gt=0)


class OverrideRequest(_ValidityWindow):
    permission: _PermissionName
    polarity: PolarityEnum
    notes: Optional[str] = Field(default=None, max_length=500)


class ParentEdgeRequest(BaseModel):
    parent_id: int = Field(gt=0)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class AnomalyResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    is_suspicious: bool
    new_ip: bool
    recent_session_count: int
    unique_ips: int
    risk_level: RiskLevelEnum
    recommendations: list[str] = Field(default_factory=list)


class TokenResponse(BaseModel):
    """Credential pair returned by login and refresh.

    refresh_token is shown here once. The server keeps only its hash.
    """

    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "bearer"
    expires_in: int
    refresh_token: str
    session_id: str
    refresh_expires_at: datetime


class LoginResponse(TokenResponse):
    user_id: int
    username: str
    permissions: list[str]
    anomaly: AnomalyResponse


class MeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: int
    username: str
    session_id: str
    organization_id: Optional[int] = None
    department_id: Optional[int] = None
    permissions: list[str]
    roles: list[str]


class SessionResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    created_at: datetime
    last_activity: datetime
    expires_at: datetime
    ip_address: Optional[str] = None
    device_info: dict[str, Any] = Field(default_factory=dict)
    current: bool = False


class DecisionResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    allowed: bool
    reason: str


class EffectivePermissionsResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: int
    permissions: list[str]
    role_ids: list[int]
    role_names: list[str]


class CountResponse(BaseModel):
    """Generic "how many rows changed" response for bulk revocations."""

    model_config = ConfigDict(frozen=True)

    count: int


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

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
