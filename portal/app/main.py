"""
FastAPI Identity Portal Application Factory
===========================================

Main entry point of the portal. It signs users in through one of three OIDC
sign-in schemes, exposes profile endpoints backed by the directory service,
and calls the downstream groceries API with tokens obtained on behalf of
the user.

Routers:
    - /auth/*   : Sign-in, per-scheme callbacks, sign-out, error page
    - /api/*    : Profile endpoints (me, token, userattributes, verifycode)
    - /health   : Health check endpoint

Environment Variables Required:
    - OPENIDCONNECT__AUTHORITY / __CLIENT_ID / __CLIENT_SECRET (and __POLICY)
    - ARKOSE_FRAUD_PROTECTION__... : Same keys for the fraud-protection scheme
    - EMAIL_OTP__...               : Same keys for the email-OTP scheme
    - PUBLIC_BASE_URL: Externally visible base URL (redirect URIs)
    - SESSION_SECRET: Secret for session cookies (>= 32 characters)
    - GROCERIES_API__BASE_URL / __SCOPES / __ENDPOINT: Downstream account API
    - LOG_LEVEL: Logging level (default: INFO)

Running the Service:
    Development:
        uvicorn portal.app.main:create_app --factory --reload --port 8080

    Production:
        uvicorn portal.app.main:create_app --factory --host 0.0.0.0 --port 8080
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import Dict, Optional

import httpx
import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.sessions import SessionMiddleware

from .auth import auth_router
from .auth.errors import MetadataError
from .auth.handlers import build_scheme_handlers
from .auth.metadata import IssuerConfigResolver
from .auth.schemes import build_scheme_table
from .auth.session import SessionTicketCodec, flow_cookie_key
from .auth.tokens import DownstreamTokenProvider
from .auth.validation import JwtBearerAuthenticator, TokenValidator
from .config import Settings, get_settings
from .http import create_http_client
from .models import HealthResponse
from .profile import profile_router
from .profile.directory import DirectoryClient
from .profile.verify import StepUpVerifier
from .state import PortalState
from .telemetry import Telemetry


SERVICE_NAME = "identity-portal"
SERVICE_VERSION = "1.0.0"

# Cookie holding state, nonce and PKCE verifier of in-flight sign-ins
FLOW_COOKIE = "portal.flow"

logger = logging.getLogger("portal.main")


# Configure structured JSON logging
def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format='{"timestamp": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", "message": "%(message)s", "module": "%(module)s", "function": "%(funcName)s"}',
        handlers=[logging.StreamHandler(sys.stdout)]
    )


async def _build_bearer_authenticator(
    settings: Settings,
    resolver: IssuerConfigResolver,
) -> Optional[JwtBearerAuthenticator]:
    if settings.JWT_BEARER is None:
        return None

    section = settings.JWT_BEARER
    config = await resolver.resolve(section.AUTHORITY, section.POLICY)
    validator = TokenValidator(
        config,
        valid_audiences=section.VALID_AUDIENCES,
        valid_issuers=section.VALID_ISSUERS or None,
    )
    return JwtBearerAuthenticator(validator)


async def build_portal_state(settings: Settings, http_client: httpx.AsyncClient) -> PortalState:
    """
    Build every shared resource of the portal.

    Issuer metadata of all schemes is resolved here, so a failure aborts
    startup.

    Raises:
        MetadataError: If issuer metadata or signing keys cannot be obtained
    """
    timeout = settings.HTTP_TIMEOUT_SECONDS
    telemetry = Telemetry(enabled=settings.TELEMETRY_ENABLED)
    resolver = IssuerConfigResolver(http_client, timeout=timeout)
    codec = SessionTicketCodec(settings.SESSION_SECRET, settings.SESSION_EXPIRY_MINUTES)

    handlers = await build_scheme_handlers(
        build_scheme_table(settings),
        resolver,
        http_client,
        codec,
        settings,
        telemetry,
    )

    tokens = DownstreamTokenProvider(http_client, handlers, timeout=timeout)

    graph_base = (settings.GRAPH_API.BASE_URL or "https://graph.microsoft.com").rstrip("/")
    directory = DirectoryClient(
        http_client,
        tokens,
        endpoint=settings.GRAPH_ENDPOINT,
        app_scopes=[f"{graph_base}/.default"],
        timeout=timeout,
    )

    verifier = StepUpVerifier(
        http_client,
        tokens,
        directory,
        settings.GROCERIES_API,
        telemetry,
        timeout=timeout,
    )

    return PortalState(
        settings=settings,
        http_client=http_client,
        resolver=resolver,
        codec=codec,
        telemetry=telemetry,
        handlers=handlers,
        tokens=tokens,
        directory=directory,
        verifier=verifier,
        bearer=await _build_bearer_authenticator(settings, resolver),
    )


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Startup tasks:
        - Configure logging
        - Create the shared HTTP client (TLS 1.2+)
        - Resolve issuer metadata for every scheme (fatal on failure)

    Shutdown tasks:
        - Close the HTTP client
    """
    settings: Settings = app.state.settings
    setup_logging(settings.LOG_LEVEL)

    logger.info(
        "Starting identity portal",
        extra={"public_base_url": settings.PUBLIC_BASE_URL, "log_level": settings.LOG_LEVEL},
    )

    if getattr(app.state, "portal", None) is not None:
        yield
        return

    http_client = create_http_client(settings)
    try:
        app.state.portal = await build_portal_state(settings, http_client)
    except MetadataError as e:
        logger.critical(f"Unable to resolve issuer metadata: {e.message}")
        await http_client.aclose()
        raise

    logger.info(
        "Identity portal started successfully",
        extra={"service": SERVICE_NAME, "version": SERVICE_VERSION},
    )

    yield

    # Shutdown
    logger.info("Shutting down identity portal")
    await http_client.aclose()
    logger.info("Identity portal shutdown complete")


# Create FastAPI application
def create_app(
    settings: Optional[Settings] = None,
    portal_state: Optional[PortalState] = None,
) -> FastAPI:
    """
    Application factory function.

    Args:
        settings: Settings to use (defaults to environment settings)
        portal_state: Prebuilt shared resources; when given, startup does
                      not resolve issuer metadata

    Returns:
        FastAPI: Configured application instance
    """
    settings = settings or get_settings()

    app = FastAPI(
        title="Identity Portal",
        description="Multi-scheme OIDC sign-in, step-up verification and token exchange",
        version=SERVICE_VERSION,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.settings = settings
    app.state.portal = portal_state

    # Redirect-flow state of in-flight sign-ins
    app.add_middleware(
        SessionMiddleware,
        secret_key=flow_cookie_key(settings.SESSION_SECRET),
        session_cookie=FLOW_COOKIE,
        max_age=settings.REMOTE_AUTHENTICATION_TIMEOUT_MINUTES * 60,
        same_site="lax",
        https_only=settings.secure_cookies,
    )

    # Configure CORS
    origins = settings.allowed_origins_list
    if origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials=True,
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["*"],
        )

    # Mount routers
    app.include_router(auth_router)
    app.include_router(profile_router)

    # Health check endpoint
    @app.get("/health", tags=["System"], response_model=HealthResponse)
    async def health_check() -> HealthResponse:
        """
        Health check endpoint.

        Returns:
            Service status and registered sign-in schemes
        """
        portal: Optional[PortalState] = app.state.portal
        return HealthResponse(
            status="ok",
            service=SERVICE_NAME,
            version=SERVICE_VERSION,
            schemes=[scheme.value for scheme in portal.handlers] if portal else [],
        )

    # Root endpoint
    @app.get("/", tags=["System"])
    async def root() -> Dict[str, object]:
        """
        Root endpoint with service information.

        Returns:
            dict: Service metadata and available endpoints
        """
        return {
            "service": SERVICE_NAME,
            "version": SERVICE_VERSION,
            "endpoints": {
                "health": "/health",
                "docs": "/docs",
                "signin": "/auth/signin",
                "signout": "/auth/signout",
                "profile": "/api/me",
            }
        }

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """
        Global exception handler for unhandled errors.

        Logs the error and returns a standardized error response.
        """
        logger.error(
            f"Unhandled exception: {str(exc)}",
            extra={
                "path": request.url.path,
                "method": request.method,
                "exception_type": type(exc).__name__
            },
            exc_info=True
        )

        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred",
                "detail": str(exc) if settings.LOG_LEVEL == "DEBUG" else None
            }
        )

    return app


if __name__ == "__main__":
    """
    Direct execution entry point.

    This allows running the service directly with: python -m portal.app.main
    However, using uvicorn command is recommended for production.
    """
    uvicorn.run(
        "portal.app.main:create_app",
        factory=True,
        host="0.0.0.0",
        port=8080,
        reload=True,
        log_level=get_settings().LOG_LEVEL.lower()
    )
