"""
Shared fixtures for the portal tests.

Provides an RSA test key pair exposed as a JWKS, ID token minting, settings
for the three schemes and a fully wired PortalState whose HTTP client is an
AsyncMock.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
from unittest.mock import AsyncMock

import httpx
import jwt
import pytest
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi.testclient import TestClient
from jwt.algorithms import RSAAlgorithm

from portal.app.auth.claims import Principal
from portal.app.auth.handlers import SchemeHandler
from portal.app.auth.metadata import IssuerConfig
from portal.app.auth.schemes import AuthScheme, build_scheme_table
from portal.app.auth.session import SessionTicket, SessionTicketCodec, SessionTokens
from portal.app.auth.tokens import DownstreamTokenProvider
from portal.app.config import Settings
from portal.app.main import create_app
from portal.app.profile.directory import DirectoryClient
from portal.app.profile.verify import StepUpVerifier
from portal.app.state import PortalState
from portal.app.telemetry import Telemetry


# Test RSA key pair generation for mocking JWKS
def generate_test_keys():
    """Generate RSA key pair for testing"""
    private_key = rsa.generate_private_key(
        public_exponent=65537,
        key_size=2048,
        backend=default_backend()
    )
    public_key = private_key.public_key()

    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption()
    )

    return private_pem.decode(), public_key


# Generate test keys once for reuse
TEST_PRIVATE_KEY, TEST_PUBLIC_KEY = generate_test_keys()
TEST_KID = "test-key-id-2024"

AUTHORITY = "https://contoso.ciamlogin.com/test-tenant"
ISSUER = "https://test-tenant.ciamlogin.com/test-tenant/v2.0"
AUTHORIZATION_ENDPOINT = "https://contoso.ciamlogin.com/test-tenant/oauth2/v2.0/authorize"
TOKEN_ENDPOINT = "https://contoso.ciamlogin.com/test-tenant/oauth2/v2.0/token"
END_SESSION_ENDPOINT = "https://contoso.ciamlogin.com/test-tenant/oauth2/v2.0/logout"
JWKS_URI = "https://contoso.ciamlogin.com/test-tenant/discovery/v2.0/keys"

CLIENT_IDS = {
    AuthScheme.OPENIDCONNECT: "default-client-id",
    AuthScheme.ARKOSE_FRAUD_PROTECTION: "fraud-client-id",
    AuthScheme.EMAIL_OTP: "email-otp-client-id",
}

SESSION_SECRET = "test-session-secret-0123456789abcdef"

USER_OID = "00000000-0000-0000-0000-0000000000aa"


def create_jwks(kid: str = TEST_KID) -> Dict[str, Any]:
    """JWKS containing the test public key."""
    key = RSAAlgorithm.to_jwk(TEST_PUBLIC_KEY, as_dict=True)
    key["kid"] = kid
    key["use"] = "sig"
    key["alg"] = "RS256"
    return {"keys": [key]}


def create_id_token(
    audience: str = CLIENT_IDS[AuthScheme.OPENIDCONNECT],
    nonce: Optional[str] = "test-nonce",
    kid: str = TEST_KID,
    exp_delta_minutes: int = 60,
    issuer: str = ISSUER,
    **claims: Any,
) -> str:
    """
    Create an ID token signed with the test private key.

    Args:
        audience: aud claim
        nonce: nonce claim (omitted when None)
        kid: Key ID for JWKS matching
        exp_delta_minutes: Token expiry in minutes
        issuer: iss claim
        **claims: Extra claims
    """
    now = datetime.now(timezone.utc)
    payload = {
        "iss": issuer,
        "sub": "test-user-sub-123",
        "aud": audience,
        "exp": now + timedelta(minutes=exp_delta_minutes),
        "iat": now,
        "nbf": now,
        "oid": USER_OID,
        "name": "Test User",
    }
    if nonce is not None:
        payload["nonce"] = nonce
    payload.update(claims)

    return jwt.encode(payload, TEST_PRIVATE_KEY, algorithm="RS256", headers={"kid": kid})


def json_response(status_code: int, body: Any, method: str = "GET", url: str = "https://test") -> httpx.Response:
    """Real httpx response bound to a request (raise_for_status works)."""
    return httpx.Response(status_code, json=body, request=httpx.Request(method, url))


def _scheme_section(scheme: AuthScheme) -> Dict[str, Any]:
    return {
        "AUTHORITY": AUTHORITY,
        "POLICY": f"{scheme.value}_flow",
        "CLIENT_ID": CLIENT_IDS[scheme],
        "CLIENT_SECRET": f"{scheme.value}-secret",
    }


def make_settings(**overrides: Any) -> Settings:
    values: Dict[str, Any] = {
        "OPENIDCONNECT": _scheme_section(AuthScheme.OPENIDCONNECT),
        "ARKOSE_FRAUD_PROTECTION": _scheme_section(AuthScheme.ARKOSE_FRAUD_PROTECTION),
        "EMAIL_OTP": _scheme_section(AuthScheme.EMAIL_OTP),
        "GROCERIES_API": {
            "BASE_URL": "api://groceries",
            "SCOPES": ["Account.Payment", "Account.Purchases"],
            "ENDPOINT": "https://groceries.example.com/api/",
        },
        "PUBLIC_BASE_URL": "http://testserver",
        "SESSION_SECRET": SESSION_SECRET,
        "TELEMETRY_ENABLED": True,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def make_issuer_config() -> IssuerConfig:
    return IssuerConfig(
        issuer=ISSUER,
        signing_keys=tuple(create_jwks()["keys"]),
        authorization_endpoint=AUTHORIZATION_ENDPOINT,
        token_endpoint=TOKEN_ENDPOINT,
        jwks_uri=JWKS_URI,
        end_session_endpoint=END_SESSION_ENDPOINT,
    )


def build_test_state(settings: Settings, http_client) -> PortalState:
    """PortalState wired like startup, without resolving metadata."""
    telemetry = Telemetry(enabled=settings.TELEMETRY_ENABLED)
    codec = SessionTicketCodec(settings.SESSION_SECRET, settings.SESSION_EXPIRY_MINUTES)
    config = make_issuer_config()

    handlers = {
        scheme: SchemeHandler(descriptor, config, http_client, codec, settings, telemetry)
        for scheme, descriptor in build_scheme_table(settings).items()
    }
    tokens = DownstreamTokenProvider(http_client, handlers)
    directory = DirectoryClient(
        http_client,
        tokens,
        endpoint=settings.GRAPH_ENDPOINT,
        app_scopes=["https://graph.microsoft.com/.default"],
    )
    verifier = StepUpVerifier(http_client, tokens, directory, settings.GROCERIES_API, telemetry)

    return PortalState(
        settings=settings,
        http_client=http_client,
        resolver=AsyncMock(),
        codec=codec,
        telemetry=telemetry,
        handlers=handlers,
        tokens=tokens,
        directory=directory,
        verifier=verifier,
    )


def make_ticket(
    scheme: AuthScheme = AuthScheme.OPENIDCONNECT,
    step_up: bool = False,
    refresh_token: Optional[str] = "test-refresh-token",
    **claims: Any,
) -> SessionTicket:
    token_claims: Dict[str, Any] = {"name": "Test User", "oid": USER_OID, "AuthScheme": scheme.value}
    if step_up:
        token_claims["acrs"] = ["c1"]
    token_claims.update(claims)
    return SessionTicket(
        scheme=scheme,
        principal=Principal.from_token_claims(token_claims),
        tokens=SessionTokens(
            id_token=create_id_token(audience=CLIENT_IDS[scheme]),
            refresh_token=refresh_token,
        ),
    )


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def http_client():
    """Mock of the shared httpx.AsyncClient"""
    client = AsyncMock(spec=httpx.AsyncClient)
    return client


@pytest.fixture
def portal_state(settings, http_client) -> PortalState:
    return build_test_state(settings, http_client)


@pytest.fixture
def app(settings, portal_state):
    return create_app(settings, portal_state=portal_state)


@pytest.fixture
def client(app):
    """Test client that does not follow redirects"""
    return TestClient(app, follow_redirects=False)
