"""
Sign-in schemes and per-request scheme selection.

Three schemes are registered at startup, each with its own OIDC client
registration and its own session cookie. The table of scheme descriptors is
built once from settings and never mutated afterwards.
"""

from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Mapping, Optional, Tuple

from ..config import SchemeSettings, Settings


class AuthScheme(str, Enum):
    OPENIDCONNECT = "OpenIdConnect"
    ARKOSE_FRAUD_PROTECTION = "ArkoseFraudProtection"
    EMAIL_OTP = "EmailOtp"


DEFAULT_SCHEME = AuthScheme.OPENIDCONNECT

# Schemes that a `handler` query parameter may explicitly request
OVERRIDABLE_SCHEMES = (AuthScheme.ARKOSE_FRAUD_PROTECTION, AuthScheme.EMAIL_OTP)

DEFAULT_COOKIE_PREFIX = ".Portal"


def cookie_name(scheme: AuthScheme, prefix: str = DEFAULT_COOKIE_PREFIX) -> str:
    """Name of the session cookie owned by a scheme."""
    return f"{prefix}.{scheme.value}Cookies"


def callback_path(scheme: AuthScheme) -> str:
    return f"/auth/callback/{scheme.value}"


@dataclass(frozen=True)
class SchemeDescriptor:
    """Immutable registration of one sign-in scheme."""

    scheme: AuthScheme
    authority: str
    client_id: str
    client_secret: Optional[str]
    policy: Optional[str]
    scopes: Tuple[str, ...]
    valid_audiences: Tuple[str, ...]
    metadata_address: Optional[str]
    cookie_name: str
    callback_path: str
    issuer: Optional[str] = None
    authorization_endpoint: Optional[str] = None
    token_endpoint: Optional[str] = None
    userinfo_endpoint: Optional[str] = None
    end_session_endpoint: Optional[str] = None
    jwks_uri: Optional[str] = None

    @classmethod
    def from_settings(
        cls,
        scheme: AuthScheme,
        section: SchemeSettings,
        cookie_prefix: str = DEFAULT_COOKIE_PREFIX,
    ) -> "SchemeDescriptor":
        return cls(
            scheme=scheme,
            authority=section.AUTHORITY,
            client_id=section.CLIENT_ID,
            client_secret=section.CLIENT_SECRET,
            policy=section.POLICY,
            scopes=tuple(section.SCOPES),
            valid_audiences=tuple(section.VALID_AUDIENCES or [section.CLIENT_ID]),
            metadata_address=section.METADATA_ADDRESS,
            cookie_name=cookie_name(scheme, cookie_prefix),
            callback_path=callback_path(scheme),
            issuer=section.ISSUER,
            authorization_endpoint=section.AUTHORIZATION_ENDPOINT,
            token_endpoint=section.TOKEN_ENDPOINT,
            userinfo_endpoint=section.USERINFO_ENDPOINT,
            end_session_endpoint=section.END_SESSION_ENDPOINT,
            jwks_uri=section.JWKS_URI,
        )

    @property
    def config_overrides(self) -> dict:
        """Explicitly configured metadata values that replace discovered ones."""
        overrides = {
            "issuer": self.issuer,
            "authorization_endpoint": self.authorization_endpoint,
            "token_endpoint": self.token_endpoint,
            "userinfo_endpoint": self.userinfo_endpoint,
            "end_session_endpoint": self.end_session_endpoint,
        }
        return {k: v for k, v in overrides.items() if v}


def build_scheme_table(settings: Settings) -> Mapping[AuthScheme, SchemeDescriptor]:
    """
    Build the read-only table of scheme descriptors.

    Args:
        settings: Application settings

    Returns:
        Mapping of every AuthScheme to its descriptor
    """
    sections = {
        AuthScheme.OPENIDCONNECT: settings.OPENIDCONNECT,
        AuthScheme.ARKOSE_FRAUD_PROTECTION: settings.ARKOSE_FRAUD_PROTECTION,
        AuthScheme.EMAIL_OTP: settings.EMAIL_OTP,
    }
    return MappingProxyType({
        scheme: SchemeDescriptor.from_settings(scheme, section, settings.COOKIE_PREFIX)
        for scheme, section in sections.items()
    })


# =============================================================================
# Scheme Router
# =============================================================================

def select_scheme(
    cookies: Mapping[str, str],
    query_params: Mapping[str, str],
    cookie_prefix: str = DEFAULT_COOKIE_PREFIX,
) -> AuthScheme:
    """
    Decide which sign-in scheme handles a request.

    Order (first match wins, the query override last):
        1. The default scheme
        2. The fraud-protection session cookie
        3. The email-OTP session cookie
        4. An explicit ``handler`` query parameter naming one of the
           non-default schemes overrides any cookie

    Only inspects the request; runs for unauthenticated requests too.

    Args:
        cookies: Request cookies
        query_params: Request query parameters
        cookie_prefix: Prefix of the session cookie names

    Returns:
        The selected scheme
    """
    scheme = DEFAULT_SCHEME

    if cookie_name(AuthScheme.ARKOSE_FRAUD_PROTECTION, cookie_prefix) in cookies:
        scheme = AuthScheme.ARKOSE_FRAUD_PROTECTION
    elif cookie_name(AuthScheme.EMAIL_OTP, cookie_prefix) in cookies:
        scheme = AuthScheme.EMAIL_OTP

    handler = query_params.get("handler")
    for candidate in OVERRIDABLE_SCHEMES:
        if handler == candidate.value:
            scheme = candidate

    return scheme
