"""
Token exchange for downstream APIs.

This module handles:
- Resolving a downstream API's scopes and endpoint from settings
- Redeeming the session's refresh token for an access token scoped to
  a downstream API (on behalf of the signed-in user)
- Client credentials tokens for app-only directory writes

Access tokens live for the duration of one outbound call. They are never
persisted and never written back into the session.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import httpx

from ..config import DownstreamApiSettings
from .errors import ConfigurationError, CredentialError, NetworkError
from .schemes import DEFAULT_SCHEME, AuthScheme
from .session import SessionTicket


logger = logging.getLogger(__name__)

# Identity provider error codes that require the user to sign in again
UI_REQUIRED_ERRORS = frozenset({
    "interaction_required",
    "invalid_grant",
    "consent_required",
    "login_required",
})

NO_CACHED_IDENTITY = "user_null"

NO_CACHED_IDENTITY_MESSAGE = (
    "The token cache does not contain the token to access the web APIs. "
    "To get the access token, sign-out and sign-in again."
)


# =============================================================================
# Downstream API Settings
# =============================================================================

def resolve_downstream_api(
    api: DownstreamApiSettings,
    section: str,
) -> Tuple[List[str], str]:
    """
    Resolve the fully-qualified scopes and the endpoint of a downstream API.

    Settings are checked in order: Scopes, BaseUrl, Endpoint. Nothing is
    fetched before all three are present.

    Args:
        api: Downstream API settings section
        section: Section name used in the remediation messages

    Returns:
        Tuple of (["{BaseUrl}/{scope}", ...], endpoint)

    Raises:
        ConfigurationError: With a remediation message naming the setting
    """
    if api.SCOPES is None:
        raise ConfigurationError(
            f"The {section}:Scopes application setting is misconfigured or missing. "
            'Use the array format: ["Account.Payment", "Account.Purchases"]'
        )

    if not api.BASE_URL:
        raise ConfigurationError(
            f"The {section}:BaseUrl application setting is misconfigured or missing. "
            "Check out your applications' scope base URL in Microsoft Entra admin center. "
            "For example: api://12345678-0000-0000-0000-000000000000"
        )

    if not api.ENDPOINT:
        raise ConfigurationError(
            f"The {section}:Endpoint application setting is misconfigured or missing."
        )

    scopes = [f"{api.BASE_URL}/{scope}" for scope in api.SCOPES]
    return scopes, api.ENDPOINT


# =============================================================================
# Bearer Token
# =============================================================================

@dataclass(frozen=True)
class BearerToken:
    access_token: str
    expires_on: int
    scopes: Tuple[str, ...] = ()

    @property
    def authorization_header(self) -> str:
        return f"Bearer {self.access_token}"


# =============================================================================
# Token Provider
# =============================================================================

class DownstreamTokenProvider:
    """
    Acquire bearer tokens at the token endpoint of a scheme.

    Args:
        http_client: Shared HTTP client
        handlers: Scheme handlers (each exposes ``descriptor`` and ``issuer_config``)
        timeout: Per-request timeout in seconds
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        handlers: Mapping[AuthScheme, Any],
        timeout: float = 10.0,
    ):
        self.http_client = http_client
        self.handlers = handlers
        self.timeout = timeout

    async def acquire(
        self,
        ticket: Optional[SessionTicket],
        scopes: Sequence[str],
    ) -> BearerToken:
        """
        Obtain an access token for the signed-in user.

        Args:
            ticket: Current session, or None
            scopes: Fully-qualified scopes

        Returns:
            BearerToken for the requested scopes

        Raises:
            CredentialError: No cached identity, or the user must sign in again
            ConfigurationError: The identity provider rejected the request
            NetworkError: The token endpoint could not be reached
        """
        if ticket is None or not ticket.tokens.refresh_token:
            raise CredentialError(NO_CACHED_IDENTITY_MESSAGE, NO_CACHED_IDENTITY)

        handler = self.handlers[ticket.scheme]
        data = {
            "grant_type": "refresh_token",
            "client_id": handler.descriptor.client_id,
            "refresh_token": ticket.tokens.refresh_token,
            "scope": " ".join(scopes),
        }
        if handler.descriptor.client_secret:
            data["client_secret"] = handler.descriptor.client_secret

        return await self._request_token(handler.issuer_config.token_endpoint, data, scopes)

    async def acquire_for_app(self, scopes: Sequence[str]) -> BearerToken:
        """
        Obtain an app-only access token (client credentials grant) using the
        default scheme's registration.
        """
        handler = self.handlers[DEFAULT_SCHEME]
        if not handler.descriptor.client_secret:
            raise ConfigurationError(
                "The OPENIDCONNECT__CLIENT_SECRET application setting is required for app-only calls."
            )

        data = {
            "grant_type": "client_credentials",
            "client_id": handler.descriptor.client_id,
            "client_secret": handler.descriptor.client_secret,
            "scope": " ".join(scopes),
        }
        return await self._request_token(handler.issuer_config.token_endpoint, data, scopes)

    async def _request_token(
        self,
        token_endpoint: str,
        data: Dict[str, str],
        scopes: Sequence[str],
    ) -> BearerToken:
        try:
            response = await self.http_client.post(
                token_endpoint,
                data=data,
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            logger.error(f"Token endpoint timed out: {e}")
            raise NetworkError("The identity provider did not respond in time.") from e
        except httpx.HTTPError as e:
            logger.error(f"Token endpoint request failed: {e}")
            raise NetworkError(f"Unable to reach the identity provider: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = None

        if response.status_code != 200 or not isinstance(body, dict) or "access_token" not in body:
            raise _token_error(response.status_code, body)

        expires_in = int(body.get("expires_in", 3600))

        logger.info(
            "Acquired downstream access token",
            extra={"grant_type": data["grant_type"], "expires_in": expires_in},
        )

        return BearerToken(
            access_token=body["access_token"],
            expires_on=int(time.time()) + expires_in,
            scopes=tuple(scopes),
        )


def _token_error(status_code: int, body: Optional[Dict[str, Any]]) -> Exception:
    if not isinstance(body, dict) or "error" not in body:
        logger.error(f"Unexpected token endpoint response: HTTP {status_code}")
        return NetworkError(f"The identity provider returned an unexpected response (HTTP {status_code}).")

    error = body.get("error")
    description = body.get("error_description") or error

    logger.warning(
        "Token request rejected",
        extra={"error": error, "status_code": status_code},
    )

    if error in UI_REQUIRED_ERRORS:
        return CredentialError(description, error)
    return ConfigurationError(description)
