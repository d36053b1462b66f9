"""
Application state container.

Holds the shared resources built at startup. Routes reach it through
``request.app.state.portal``.
"""

from dataclasses import dataclass
from typing import Dict, Optional

import httpx

from .auth.handlers import SchemeHandler
from .auth.metadata import IssuerConfigResolver
from .auth.schemes import AuthScheme
from .auth.session import SessionTicketCodec
from .auth.tokens import DownstreamTokenProvider
from .auth.validation import JwtBearerAuthenticator
from .config import Settings
from .profile.directory import DirectoryClient
from .profile.verify import StepUpVerifier
from .telemetry import Telemetry


@dataclass
class PortalState:
    settings: Settings
    http_client: httpx.AsyncClient
    resolver: IssuerConfigResolver
    codec: SessionTicketCodec
    telemetry: Telemetry
    handlers: Dict[AuthScheme, SchemeHandler]
    tokens: DownstreamTokenProvider
    directory: DirectoryClient
    verifier: StepUpVerifier
    bearer: Optional[JwtBearerAuthenticator] = None
