"""
Authentication error taxonomy and error-page redirects.

Every failure of the sign-in pipeline or of a downstream call is expressed
as one of the exceptions below. Controllers catch them at the boundary and
turn them into a message carried in the response; the sign-in callback turns
them into a redirect to the error page.
"""

import unicodedata
from typing import Optional
from urllib.parse import urlencode


ERROR_PAGE_PATH = "/auth/error"

# Error codes used on the error page when the failure is local
AUTHENTICATION_FAILED = "APP_AUTH_0001"
REMOTE_FAILURE = "APP_AUTH_0002"


class PortalAuthError(Exception):
    """Base exception for authentication and authorization failures"""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ConfigurationError(PortalAuthError):
    """An application setting is missing or invalid. Never retried."""


class CredentialError(PortalAuthError):
    """
    The user's cached credential cannot silently produce a token.

    ``code`` is ``user_null`` when the session holds no identity at all,
    otherwise the identity provider's error code (e.g. ``interaction_required``).
    """

    def __init__(self, message: str, code: str):
        super().__init__(message)
        self.code = code

    @property
    def no_cached_identity(self) -> bool:
        return self.code == "user_null"


class ChallengeRequired(PortalAuthError):
    """A downstream API asked for additional claims."""

    def __init__(self, claims: str):
        super().__init__("Additional claims are required")
        self.claims = claims


class NetworkError(PortalAuthError):
    """A downstream call failed or timed out."""


class ValidationError(PortalAuthError):
    """Token signature, issuer, audience, lifetime or nonce validation failed."""


class AuthorizationError(PortalAuthError):
    """The session does not satisfy the step-up requirement."""


class MetadataError(PortalAuthError):
    """Issuer metadata or signing keys could not be obtained."""


# =============================================================================
# Error Page Helpers
# =============================================================================

def strip_control_characters(text: Optional[str]) -> str:
    """Remove Unicode control characters (category Cc) from text."""
    if not text:
        return ""
    return "".join(ch for ch in text if unicodedata.category(ch) != "Cc")


def error_page_url(error: str, description: Optional[str]) -> str:
    """
    Build the error page URL.

    Args:
        error: Error code
        description: Human-readable description (control characters are removed)

    Returns:
        Relative URL of the error page with encoded query parameters
    """
    query = urlencode({
        "error": strip_control_characters(error),
        "description": strip_control_characters(description),
    })
    return f"{ERROR_PAGE_PATH}?{query}"


def extract_error_code(description: Optional[str]) -> Optional[str]:
    """
    Extract an identity-provider error code from the start of a description.

    Entra ID descriptions look like ``AADSTS50058: A silent sign-in request...``.

    Returns:
        The prefix before the first colon when it is at most 12 characters
    """
    if not description:
        return None
    index = description.find(":")
    if 0 < index <= 12:
        return description[:index]
    return None
