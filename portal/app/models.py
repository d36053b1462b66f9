"""
Data Models Module

This module defines Pydantic models for request/response validation
and data serialization throughout the portal.

Models are organized by functional area:
- Step-up verification models (VerifyCode request, downstream result, response)
- Profile models (principal summary, user attributes, token page)
- System models (health, errors)

Field names follow the JSON contracts of the browser pages and the
downstream APIs (camelCase).
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# Step-up Verification Models
# ============================================================================

class AuthMethodType(str, Enum):
    """Factor verified by the one-time code."""
    SIGN_IN_EMAIL = "SignInEmail"
    EMAIL_MFA = "EmailMfa"


class VerificationStatus(str, Enum):
    """Terminal state of one verification attempt."""
    SUCCESS = "success"
    VALIDATION_FAILED = "validation_failed"
    CONFIGURATION_ERROR = "configuration_error"
    CREDENTIAL_ERROR = "credential_error"
    NETWORK_ERROR = "network_error"
    AUTHORIZATION_ERROR = "authorization_error"


class VerifyCodeRequest(BaseModel):
    """One-time code submitted by the browser and relayed downstream."""
    code: str = Field(..., description="One-time code", min_length=1)
    authType: AuthMethodType = Field(..., description="Factor the code verifies")
    authValue: str = Field(..., description="Email address the code was sent to", min_length=1)


class DownstreamVerifyResult(BaseModel):
    """Response of the downstream VerifyCode operation."""
    model_config = ConfigDict(extra="ignore")

    validationPassed: bool = False
    authType: Optional[AuthMethodType] = None
    authValue: Optional[str] = None
    message: Optional[str] = None


class VerifyCodeResponse(BaseModel):
    """Result returned to the browser."""
    status: VerificationStatus = Field(..., description="Terminal state of the attempt")
    validationPassed: bool = Field(default=False)
    authType: Optional[AuthMethodType] = None
    authValue: Optional[str] = None
    message: str = Field(default="", description="User-visible message")


# ============================================================================
# Profile Models
# ============================================================================

class PrincipalSummary(BaseModel):
    """Signed-in user as seen by the portal."""
    name: Optional[str] = None
    objectId: Optional[str] = None
    authScheme: Optional[str] = None
    stepUp: bool = Field(default=False, description="acrs=c1 asserted by the identity provider")
    roles: List[str] = Field(default_factory=list)
    policies: Dict[str, bool] = Field(default_factory=dict)
    claims: List[List[str]] = Field(default_factory=list)


class UserAttributes(BaseModel):
    """Profile attributes read from the directory."""
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    displayName: Optional[str] = None
    givenName: Optional[str] = None
    surname: Optional[str] = None
    mail: Optional[str] = None
    country: Optional[str] = None
    city: Optional[str] = None
    error: Optional[str] = Field(None, description="User-visible error message")


class TokenInfo(BaseModel):
    """Data of the token page."""
    idToken: str = ""
    idTokenExpiresIn: str = ""
    accessToken: str = ""
    accessTokenError: str = ""
    downstreamAccessToken: str = ""
    downstreamAccessTokenError: str = ""
    actAs: Optional[str] = None
    authScheme: Optional[str] = None


# ============================================================================
# Health Check Models
# ============================================================================

class HealthResponse(BaseModel):
    """Health check response model."""
    status: str = Field(..., description="Service health status")
    service: str = Field(..., description="Service name")
    version: str = Field(..., description="Service version")
    schemes: List[str] = Field(default_factory=list, description="Registered sign-in schemes")


# ============================================================================
# Error Models
# ============================================================================

class ErrorResponse(BaseModel):
    """Standardized error response model."""
    error: str = Field(..., description="Error type or code")
    message: str = Field(..., description="Human-readable error message")
    detail: Optional[Any] = Field(None, description="Additional error details")
    timestamp: datetime = Field(default_factory=_utcnow, description="Error timestamp")
