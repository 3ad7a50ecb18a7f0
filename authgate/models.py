"""
Data Models Module

This module defines Pydantic models for the data the gate stores, derives,
and returns while authenticating a request.

Models are organized by functional area:
- Identity provider models (token response, verified identity)
- Store models (pending login state)
- Middleware outcomes (proceed, redirect, reject)
- Response models (error body, health)
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


# ============================================================================
# Identity Provider Models
# ============================================================================

class TokenResponse(BaseModel):
    """Token endpoint response, kept verbatim including unknown fields."""

    model_config = ConfigDict(extra="allow")

    id_token: str = Field(..., description="Signed OIDC ID token", min_length=1)
    access_token: str = Field(..., description="Access token issued to the client", min_length=1)
    token_type: Optional[str] = Field(None, description="Token type, usually Bearer")
    expires_in: Optional[int] = Field(None, description="Access token lifetime in seconds")
    scope: Optional[str] = Field(None, description="Granted scopes")
    refresh_token: Optional[str] = Field(None, description="Refresh token, stored but never used")

    def to_storage(self) -> str:
        """Serialize only the fields the identity provider sent."""
        return self.model_dump_json(exclude_unset=True)


class Identity(BaseModel):
    """Principal derived from a verified ID token. Never persisted."""

    subject: str = Field(..., description="The 'sub' claim")
    issuer: str = Field(..., description="The 'iss' claim")
    audience: List[str] = Field(..., description="The 'aud' claim, normalized to a list")
    expires_at: datetime = Field(..., description="The 'exp' claim")
    issued_at: Optional[datetime] = Field(None, description="The 'iat' claim")
    claims: Dict[str, Any] = Field(default_factory=dict, description="Full verified claim set")

    @classmethod
    def from_claims(cls, claims: Dict[str, Any]) -> "Identity":
        audience = claims.get("aud")
        if isinstance(audience, str):
            audience = [audience]
        issued_at = claims.get("iat")
        return cls(
            subject=claims["sub"],
            issuer=claims["iss"],
            audience=list(audience or []),
            expires_at=datetime.fromtimestamp(claims["exp"], tz=timezone.utc),
            issued_at=datetime.fromtimestamp(issued_at, tz=timezone.utc) if issued_at is not None else None,
            claims=dict(claims),
        )


# ============================================================================
# Store Models
# ============================================================================

class PendingState(BaseModel):
    """One in-flight login attempt, keyed by its state token in the store."""

    return_url: str = Field(..., description="Relative URL to send the browser to after login")
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# ============================================================================
# Middleware Outcomes
# ============================================================================

class SessionCookie(BaseModel):
    """Session cookie to set on a redirect."""
    session_id: str
    expires_at: datetime


class Proceed(BaseModel):
    """Request is authenticated; hand it to the next handler."""
    identity: Identity
    session_id: str


class Redirect(BaseModel):
    """Answer with a 302 to `location`."""
    location: str
    session_cookie: Optional[SessionCookie] = None
    clear_cookie: bool = False


class Reject(BaseModel):
    """Answer with a minimal error response."""
    status_code: int
    error: str
    message: str
    clear_cookie: bool = False


AuthOutcome = Union[Proceed, Redirect, Reject]


# ============================================================================
# Response Models
# ============================================================================

class ErrorResponse(BaseModel):
    """Error body returned on rejection."""
    error: str = Field(..., description="Error type or code")
    message: str = Field(..., description="Human-readable error message")


class HealthResponse(BaseModel):
    """Health check response model."""
    status: str = Field(..., description="Service health status")
    service: str = Field(..., description="Service name")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
