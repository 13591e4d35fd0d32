"""
API request and response models for authgate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import User

# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


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


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class UserInfo(BaseModel):
    """Public view of an authenticated identity."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str = ""
    picture: str = ""
    email: str = ""
    role: str = ""
    admin: bool = False
    attributes: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_user(cls, user: User) -> "UserInfo":
        return cls(
            id=user.id,
            name=user.name,
            picture=user.picture,
            email=user.email,
            role=user.role,
            admin=user.is_admin,
            attributes=dict(user.attributes),
        )


class ProvidersResponse(BaseModel):
    """Response for GET /api/v1/auth/providers."""

    model_config = ConfigDict(frozen=True)

    providers: list[str]
