"""
Per-scheme OIDC handlers.

This module implements the OAuth 2.0 / OIDC authorization code flow once
per sign-in scheme. A handler runs the redirect and callback pipelines as
explicit stages in a fixed order:

Redirect:  build message -> customize -> store flow state -> redirect
Callback:  IdP error check -> state/expiry check -> code redemption ->
           ID token validation -> nonce check -> claims augmentation ->
           session cookie

A handler only reads and writes its own session cookie and its own entry of
the redirect-flow session.
"""

import base64
import hashlib
import logging
import secrets
import time
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlencode

import httpx
from fastapi import Request
from fastapi.responses import RedirectResponse

from ..config import Settings
from ..telemetry import Telemetry
from .claims import Principal, augment_principal, session_claims
from .errors import (
    AUTHENTICATION_FAILED,
    REMOTE_FAILURE,
    NetworkError,
    PortalAuthError,
    ValidationError,
    error_page_url,
    extract_error_code,
)
from .metadata import IssuerConfig, IssuerConfigResolver
from .protocol import AuthenticationProperties, ProtocolMessage, customize
from .schemes import AuthScheme, SchemeDescriptor
from .session import (
    SessionTicket,
    SessionTicketCodec,
    SessionTokens,
    cookie_names,
    join_cookie,
    split_cookie,
)
from .validation import TokenValidator, validate_nonce


logger = logging.getLogger(__name__)


# =============================================================================
# PKCE Helper Functions
# =============================================================================

def generate_code_verifier() -> str:
    """
    Generate a cryptographically random code verifier for PKCE.

    Returns:
        Base64-URL-encoded random string (43-128 characters)
    """
    verifier_bytes = secrets.token_bytes(32)
    return base64.urlsafe_b64encode(verifier_bytes).decode("utf-8").rstrip("=")


def generate_code_challenge(verifier: str) -> str:
    """
    Generate code challenge from verifier using S256 method.

    Args:
        verifier: Code verifier string

    Returns:
        Base64-URL-encoded SHA256 hash of verifier
    """
    digest = hashlib.sha256(verifier.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).decode("utf-8").rstrip("=")


def local_return_url(url: Optional[str]) -> str:
    """Return url when it is a local path, otherwise the site root."""
    if url and url.startswith("/") and not url.startswith(("//", "/\\")):
        return url
    return "/"


# =============================================================================
# Scheme Handler
# =============================================================================

class SchemeHandler:
    """
    OIDC handler bound to one scheme.

    Attributes:
        descriptor: Immutable scheme registration
        issuer_config: Resolved issuer metadata and signing keys
        validator: ID token validator for this scheme's audiences
    """

    def __init__(
        self,
        descriptor: SchemeDescriptor,
        issuer_config: IssuerConfig,
        http_client: httpx.AsyncClient,
        codec: SessionTicketCodec,
        settings: Settings,
        telemetry: Telemetry,
    ):
        self.descriptor = descriptor
        self.issuer_config = issuer_config
        self.http_client = http_client
        self.codec = codec
        self.settings = settings
        self.telemetry = telemetry
        self.validator = TokenValidator(issuer_config, descriptor.valid_audiences)

    @property
    def scheme(self) -> AuthScheme:
        return self.descriptor.scheme

    @property
    def flow_key(self) -> str:
        return f"{self.scheme.value}.flow"

    @property
    def redirect_uri(self) -> str:
        return f"{self.settings.public_base_url_str}{self.descriptor.callback_path}"

    # -------------------------------------------------------------------------
    # Redirect pipeline
    # -------------------------------------------------------------------------

    def build_message(self, state: str, nonce: str, code_challenge: str) -> ProtocolMessage:
        """Authorization request before per-request customization."""
        return ProtocolMessage(
            issuer_address=self.issuer_config.authorization_endpoint,
            parameters={
                "client_id": self.descriptor.client_id,
                "response_type": "code",
                "redirect_uri": self.redirect_uri,
                "response_mode": "query",
                "scope": " ".join(self.descriptor.scopes),
                "state": state,
                "nonce": nonce,
                "code_challenge": code_challenge,
                "code_challenge_method": "S256",
            },
        )

    def challenge(
        self,
        request: Request,
        properties: Optional[AuthenticationProperties] = None,
        return_url: Optional[str] = None,
    ) -> RedirectResponse:
        """
        Redirect the browser to the identity provider.

        Args:
            request: Incoming request (its session stores the flow state)
            properties: Sign-in properties for this attempt
            return_url: Local path to return to after sign-in

        Returns:
            302 RedirectResponse to the authorization endpoint
        """
        state = secrets.token_urlsafe(32)
        nonce = secrets.token_urlsafe(32)
        code_verifier = generate_code_verifier()

        message = self.build_message(state, nonce, generate_code_challenge(code_verifier))
        message = customize(message, properties or AuthenticationProperties())

        request.session[self.flow_key] = {
            "state": state,
            "nonce": nonce,
            "code_verifier": code_verifier,
            "return_url": local_return_url(return_url),
            "created_at": int(time.time()),
        }

        logger.info(
            "Redirecting to identity provider",
            extra={"scheme": self.scheme.value, "step_up": properties is not None and properties.step_up is not None},
        )

        return RedirectResponse(url=message.create_authentication_request_url(), status_code=302)

    # -------------------------------------------------------------------------
    # Callback pipeline
    # -------------------------------------------------------------------------

    async def handle_callback(self, request: Request) -> RedirectResponse:
        """
        Complete the authorization code flow.

        Every failure ends in a redirect to the error page.

        Returns:
            Redirect to the return URL with the session cookie set, or to
            the error page
        """
        params = request.query_params
        flow = request.session.pop(self.flow_key, None)

        # Stage 1: errors reported by the identity provider
        error = params.get("error")
        if error:
            description = params.get("error_description")
            self.telemetry.track_auth_error(error, description, extract_error_code(description))
            logger.warning(
                "Identity provider returned an error",
                extra={"scheme": self.scheme.value, "error": error},
            )
            return RedirectResponse(url=error_page_url(error, description), status_code=302)

        # Stage 2: flow state
        state = params.get("state")
        if not flow or not state or not secrets.compare_digest(str(flow.get("state", "")), state):
            return self._remote_failure(
                "Invalid state parameter. This may be a CSRF attack or expired session."
            )

        timeout_seconds = self.settings.REMOTE_AUTHENTICATION_TIMEOUT_MINUTES * 60
        if time.time() - flow.get("created_at", 0) > timeout_seconds:
            return self._remote_failure("The sign-in request has expired. Please try again.")

        code = params.get("code")
        if not code:
            return self._remote_failure("Missing required parameter: code")

        # Stage 3: code redemption
        try:
            token_response = await self._exchange_code_for_tokens(code, flow.get("code_verifier"))
        except PortalAuthError as e:
            return self._remote_failure(e.message)

        # Stage 4: token validation
        try:
            claims = self.validator.validate(token_response["id_token"])
            validate_nonce(claims, flow.get("nonce"))
        except ValidationError as e:
            return self._authentication_failed(e)

        # Stage 5: claims augmentation
        principal = augment_principal(
            Principal.from_token_claims(session_claims(claims)),
            self.scheme.value,
        )

        ticket = SessionTicket(
            scheme=self.scheme,
            principal=principal,
            tokens=_session_tokens(token_response),
        )

        logger.info(
            "User signed in",
            extra={"scheme": self.scheme.value, "oid": principal.object_id},
        )

        response = RedirectResponse(url=local_return_url(flow.get("return_url")), status_code=302)
        for name, value in split_cookie(self.descriptor.cookie_name, self.codec.encode(ticket)):
            response.set_cookie(
                key=name,
                value=value,
                max_age=self.codec.max_age_seconds,
                httponly=True,
                secure=self.settings.secure_cookies,
                samesite="lax",
            )
        return response

    async def _exchange_code_for_tokens(
        self,
        code: str,
        code_verifier: Optional[str],
    ) -> Dict[str, Any]:
        """
        Exchange authorization code for ID, access and refresh tokens.

        Raises:
            NetworkError: If the token endpoint is unreachable or rejects the code
        """
        payload = {
            "client_id": self.descriptor.client_id,
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.redirect_uri,
            "scope": " ".join(self.descriptor.scopes),
        }

        if self.descriptor.client_secret:
            payload["client_secret"] = self.descriptor.client_secret

        if code_verifier:
            payload["code_verifier"] = code_verifier

        try:
            response = await self.http_client.post(
                self.issuer_config.token_endpoint,
                data=payload,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                timeout=self.settings.HTTP_TIMEOUT_SECONDS,
            )
        except httpx.HTTPError as e:
            raise NetworkError(f"Unable to communicate with authentication service: {e}") from e

        if not response.is_success:
            try:
                error_data = response.json()
            except ValueError:
                error_data = {}
            if not isinstance(error_data, dict):
                error_data = {}
            error_msg = error_data.get("error_description") or error_data.get("error") or "Token exchange failed"
            raise NetworkError(f"Token exchange failed: {error_msg}")

        try:
            token_data = response.json()
        except ValueError as e:
            raise NetworkError("Token response is not valid JSON") from e

        if "id_token" not in token_data:
            raise NetworkError("No ID token received from identity provider")

        return token_data

    def _remote_failure(self, description: str) -> RedirectResponse:
        self.telemetry.track_auth_error(REMOTE_FAILURE, description, None)
        logger.warning(
            f"Remote sign-in failure: {description}",
            extra={"scheme": self.scheme.value},
        )
        return RedirectResponse(url=error_page_url(REMOTE_FAILURE, description), status_code=302)

    def _authentication_failed(self, error: ValidationError) -> RedirectResponse:
        self.telemetry.track_auth_error(AUTHENTICATION_FAILED, error.message, None)
        logger.warning(
            f"ID token validation failed: {error.message}",
            extra={"scheme": self.scheme.value},
        )
        return RedirectResponse(
            url=error_page_url(AUTHENTICATION_FAILED, error.message),
            status_code=302,
        )

    # -------------------------------------------------------------------------
    # Session
    # -------------------------------------------------------------------------

    def authenticate(self, request: Request) -> Optional[SessionTicket]:
        """Read this scheme's session cookie."""
        ticket = self.codec.decode(join_cookie(request.cookies, self.descriptor.cookie_name))
        if ticket is None or ticket.scheme != self.scheme:
            return None
        return ticket

    def sign_out(self, request: Request) -> RedirectResponse:
        """
        Delete this scheme's session cookie and end the IdP session.
        """
        request.session.pop(self.flow_key, None)

        end_session = self.issuer_config.end_session_endpoint
        post_logout = f"{self.settings.public_base_url_str}/"
        if end_session:
            query = urlencode({"post_logout_redirect_uri": post_logout})
            separator = "&" if "?" in end_session else "?"
            url = f"{end_session}{separator}{query}"
        else:
            url = "/"

        response = RedirectResponse(url=url, status_code=302)
        for name in cookie_names(request.cookies, self.descriptor.cookie_name):
            response.delete_cookie(
                key=name,
                httponly=True,
                secure=self.settings.secure_cookies,
                samesite="lax",
            )
        logger.info("User signed out", extra={"scheme": self.scheme.value})
        return response


def _session_tokens(token_response: Mapping[str, Any]) -> SessionTokens:
    expires_in = token_response.get("expires_in")
    return SessionTokens(
        id_token=token_response.get("id_token"),
        refresh_token=token_response.get("refresh_token"),
        expires_at=int(time.time()) + int(expires_in) if expires_in else None,
    )


# =============================================================================
# Startup
# =============================================================================

async def build_scheme_handlers(
    schemes: Mapping[AuthScheme, SchemeDescriptor],
    resolver: IssuerConfigResolver,
    http_client: httpx.AsyncClient,
    codec: SessionTicketCodec,
    settings: Settings,
    telemetry: Telemetry,
) -> Dict[AuthScheme, SchemeHandler]:
    """
    Resolve issuer metadata for every scheme and build its handler.

    Raises:
        MetadataError: If any scheme's metadata cannot be resolved
    """
    handlers: Dict[AuthScheme, SchemeHandler] = {}

    for scheme, descriptor in schemes.items():
        config = await resolver.resolve(
            descriptor.authority,
            descriptor.policy,
            address=descriptor.metadata_address,
            jwks_uri=descriptor.jwks_uri,
        )
        config = config.with_overrides(**descriptor.config_overrides)

        handlers[scheme] = SchemeHandler(
            descriptor=descriptor,
            issuer_config=config,
            http_client=http_client,
            codec=codec,
            settings=settings,
            telemetry=telemetry,
        )
        logger.info("Registered sign-in scheme", extra={"scheme": scheme.value})

    return handlers
