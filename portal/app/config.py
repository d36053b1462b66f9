"""
Configuration module for the Identity Portal.

This module uses Pydantic Settings to load and validate environment variables
for the three sign-in schemes, the downstream APIs called on behalf of the
user, session cookies and HTTP client behaviour.

Nested sections are read with a double underscore delimiter, e.g.
``OPENIDCONNECT__CLIENT_ID`` or ``GROCERIES_API__SCOPES='["Account.Payment"]'``.

Environment variables are loaded from .env file or system environment.
"""

from functools import lru_cache
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# =============================================================================
# Section Models
# =============================================================================

class SchemeSettings(BaseModel):
    """
    OIDC client registration for one sign-in scheme.

    Explicit ISSUER / *_ENDPOINT / JWKS_URI values replace whatever the
    discovery document returns.
    """

    AUTHORITY: str = Field(
        ...,
        description="Authority URL (e.g., https://contoso.ciamlogin.com/<tenant-id>)",
        min_length=1,
    )

    POLICY: Optional[str] = Field(
        None,
        description="User flow / policy appended to the metadata address as ?p=",
    )

    CLIENT_ID: str = Field(
        ...,
        description="Application (client) ID registered for this scheme",
        min_length=1,
    )

    CLIENT_SECRET: Optional[str] = Field(
        None,
        description="Client secret (required to redeem codes and refresh tokens)",
    )

    SCOPES: List[str] = Field(
        default_factory=lambda: ["openid", "profile", "offline_access"],
        description="Scopes requested at sign-in",
    )

    VALID_AUDIENCES: Optional[List[str]] = Field(
        None,
        description="Accepted ID token audiences (defaults to CLIENT_ID)",
    )

    METADATA_ADDRESS: Optional[str] = Field(
        None,
        description="Explicit OpenID configuration document URL",
    )

    ISSUER: Optional[str] = None
    AUTHORIZATION_ENDPOINT: Optional[str] = None
    TOKEN_ENDPOINT: Optional[str] = None
    USERINFO_ENDPOINT: Optional[str] = None
    END_SESSION_ENDPOINT: Optional[str] = None
    JWKS_URI: Optional[str] = None

    @field_validator("AUTHORITY")
    @classmethod
    def validate_authority(cls, v: str) -> str:
        """
        Validate that the authority is an absolute HTTPS URL.

        Args:
            v: Authority URL

        Returns:
            Authority without trailing slash

        Raises:
            ValueError: If the authority is not HTTPS
        """
        if not v.startswith("https://"):
            raise ValueError(f"AUTHORITY must be an https:// URL, got: {v}")
        return v.rstrip("/")


class DownstreamApiSettings(BaseModel):
    """
    A downstream API called with a token obtained on behalf of the user.

    Every field is optional so that a misconfiguration is reported to the
    user at request time with a remediation message instead of preventing
    startup.
    """

    BASE_URL: Optional[str] = Field(
        None,
        description="Scope base URL, e.g. api://12345678-0000-0000-0000-000000000000",
    )

    SCOPES: Optional[List[str]] = Field(
        None,
        description='Scope names, e.g. ["Account.Payment", "Account.Purchases"]',
    )

    ENDPOINT: Optional[str] = Field(
        None,
        description="API endpoint URL (operation names are appended to it)",
    )


class JwtBearerSettings(BaseModel):
    """Validation parameters for bearer tokens presented to the APIs."""

    AUTHORITY: str
    POLICY: Optional[str] = None
    VALID_ISSUERS: List[str] = Field(default_factory=list)
    VALID_AUDIENCES: List[str] = Field(default_factory=list)


class AppRolesSettings(BaseModel):
    """Security group IDs used by the authorization policies."""

    COMMERCIAL_ACCOUNTS_SECURITY_GROUP: Optional[str] = None
    EXCLUSIVE_DEMOS_SECURITY_GROUP: Optional[str] = None


# =============================================================================
# Settings
# =============================================================================

class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Scheme registrations, downstream APIs, session cookies and HTTP
    behaviour are all defined here.
    """

    # =========================================================================
    # Sign-in Schemes
    # =========================================================================

    OPENIDCONNECT: SchemeSettings = Field(
        ...,
        description="Default sign-in scheme",
    )

    ARKOSE_FRAUD_PROTECTION: SchemeSettings = Field(
        ...,
        description="Sign-in scheme with fraud protection enabled in the user flow",
    )

    EMAIL_OTP: SchemeSettings = Field(
        ...,
        description="Sign-in scheme using email one-time passcode",
    )

    # =========================================================================
    # Downstream APIs
    # =========================================================================

    GROCERIES_API: DownstreamApiSettings = Field(
        default_factory=DownstreamApiSettings,
        description="Groceries account API (VerifyCode, account)",
    )

    GRAPH_API: DownstreamApiSettings = Field(
        default_factory=lambda: DownstreamApiSettings(
            BASE_URL="https://graph.microsoft.com",
            SCOPES=["User.Read"],
            ENDPOINT="https://graph.microsoft.com/v1.0/",
        ),
        description="Microsoft Graph, called with a delegated token",
    )

    GRAPH_ENDPOINT: str = Field(
        default="https://graph.microsoft.com/v1.0",
        description="Microsoft Graph endpoint used for directory writes (app-only)",
    )

    JWT_BEARER: Optional[JwtBearerSettings] = Field(
        None,
        description="Bearer token validation for API callers (disabled when unset)",
    )

    APP_ROLES: AppRolesSettings = Field(default_factory=AppRolesSettings)

    # =========================================================================
    # Web Application
    # =========================================================================

    PUBLIC_BASE_URL: str = Field(
        ...,
        description="Externally visible base URL used to build redirect URIs (e.g., https://portal.example.com)",
        min_length=1,
    )

    COOKIE_PREFIX: str = Field(
        default=".Portal",
        description="Prefix of the per-scheme session cookie names",
    )

    SESSION_SECRET: str = Field(
        ...,
        description="Secret for signing and encrypting session cookies (must be cryptographically secure)",
        min_length=32,
    )

    SESSION_EXPIRY_MINUTES: int = Field(
        default=60,
        description="Session cookie lifetime in minutes",
        ge=5,
        le=1440,
    )

    REMOTE_AUTHENTICATION_TIMEOUT_MINUTES: int = Field(
        default=30,
        description="Maximum time a sign-in round trip to the identity provider may take",
        ge=1,
    )

    ALLOWED_ORIGINS: Optional[str] = Field(
        None,
        description="Comma-separated list of allowed CORS origins (leave empty for no CORS)",
    )

    # =========================================================================
    # HTTP Client / Observability
    # =========================================================================

    HTTP_TIMEOUT_SECONDS: float = Field(
        default=10.0,
        description="Timeout applied to every outbound HTTP call",
        gt=0,
    )

    TELEMETRY_ENABLED: bool = Field(default=True)

    LOG_LEVEL: str = Field(default="INFO")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=True,
        extra="ignore",
    )

    # =========================================================================
    # Computed Properties
    # =========================================================================

    @property
    def allowed_origins_list(self) -> List[str]:
        """
        Parse and return ALLOWED_ORIGINS as a list.

        Returns:
            List of allowed origin URLs, or empty list if not configured.
        """
        if not self.ALLOWED_ORIGINS:
            return []

        return [
            origin.strip()
            for origin in self.ALLOWED_ORIGINS.split(",")
            if origin.strip()
        ]

    @property
    def public_base_url_str(self) -> str:
        """Public base URL without trailing slash."""
        return self.PUBLIC_BASE_URL.rstrip("/")

    @property
    def secure_cookies(self) -> bool:
        return self.PUBLIC_BASE_URL.startswith("https://")

    # =========================================================================
    # Validators
    # =========================================================================

    @field_validator("PUBLIC_BASE_URL")
    @classmethod
    def validate_public_base_url(cls, v: str) -> str:
        if not v.startswith(("https://", "http://")):
            raise ValueError(
                f"Invalid PUBLIC_BASE_URL: '{v}'. Expected an absolute http(s) URL"
            )
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """
        Validate log level is a standard logging level name.

        Args:
            v: Log level string

        Returns:
            Upper-cased log level

        Raises:
            ValueError: If the level is unknown
        """
        allowed_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]

        if v.upper() not in allowed_levels:
            raise ValueError(f"LOG_LEVEL must be one of {allowed_levels}, got: {v}")

        return v.upper()


# =============================================================================
# Settings Singleton
# =============================================================================

@lru_cache()
def get_settings() -> Settings:
    """
    Get or create a singleton Settings instance.

    Returns:
        Settings instance with all configuration loaded and validated.

    Raises:
        ValidationError: If required environment variables are missing
                        or invalid.
    """
    return Settings()
