"""
Profile Routes
==============

Endpoints called by the portal's pages on behalf of the signed-in user.

Endpoints:
----------
- GET  /api/me:             Principal summary and policy evaluation
- GET  /api/token:          Token page data (ID token, downstream tokens)
- GET  /api/userattributes: Directory profile (claims challenges redirect)
- POST /api/verifycode:     Step-Up Verifier Gateway
- GET  /api/access/*:       Policy-protected demo areas

Failures are reported in the response body; only a claims challenge turns
into a redirect.
"""

import logging
import time
from typing import Any, Dict, Optional, Union
from urllib.parse import urlsplit

import httpx
from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import RedirectResponse
from jose import jwt, JWTError

from ..auth.challenge import DownstreamError, challenge_properties, detect_claims_challenge
from ..auth.claims import AUTH_SCHEME_CLAIM, Principal, has_step_up
from ..auth.dependencies import get_portal_state, get_session_ticket, require_principal
from ..auth.errors import ConfigurationError, PortalAuthError
from ..auth.policies import (
    COMMERCIAL_ONLY,
    EXCLUSIVE_DEMOS_ONLY,
    LOYALTY_ACCESS,
    evaluate_policies,
    require_policy,
)
from ..auth.schemes import DEFAULT_SCHEME
from ..auth.session import SessionTicket
from ..auth.tokens import resolve_downstream_api
from ..models import PrincipalSummary, TokenInfo, UserAttributes, VerifyCodeRequest, VerifyCodeResponse


logger = logging.getLogger(__name__)

profile_router = APIRouter(prefix="/api", tags=["profile"])

GROCERIES_API_SECTION = "GroceriesApi"
GRAPH_API_SECTION = "GraphApi"

ACCOUNT_OPERATION = "account"


# ============================================================================
# Dependencies
# ============================================================================

async def require_session(
    ticket: Optional[SessionTicket] = Depends(get_session_ticket),
) -> SessionTicket:
    """
    Require a cookie session (token exchange needs the stored refresh token).

    Raises:
        HTTPException: 401 if the request has no session
    """
    if ticket is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Sign-in required",
        )
    return ticket


# ============================================================================
# Helpers
# ============================================================================

def _find_claim_ci(principal: Principal, claim_type: str) -> Optional[str]:
    for claim in principal.claims:
        if claim.type.lower() == claim_type:
            return claim.value
    return None


def _get_ci(data: Dict[str, Any], key: str) -> Any:
    for k, v in data.items():
        if k.lower() == key.lower():
            return v
    return None


def _format_expiry(id_token: str) -> str:
    try:
        exp = jwt.get_unverified_claims(id_token).get("exp")
    except JWTError as e:
        return str(e)

    if not exp:
        return "The ID token has no expiry."

    remaining = int(exp - time.time())
    if remaining <= 0:
        return "The ID token has expired."

    hours, rest = divmod(remaining, 3600)
    minutes, seconds = divmod(rest, 60)
    return f"The ID token expires in {hours:02d}:{minutes:02d}:{seconds:02d}"


def _origin_path(request: Request) -> str:
    """Path of the page that issued the request (from the Referer header)."""
    referer = request.headers.get("referer")
    if not referer:
        return "/"
    parts = urlsplit(referer)
    if parts.netloc and parts.netloc != request.url.netloc:
        return "/"
    return parts.path + (f"?{parts.query}" if parts.query else "")


# ============================================================================
# Endpoints
# ============================================================================

@profile_router.get("/me", response_model=PrincipalSummary)
async def me(
    principal: Principal = Depends(require_principal),
    state=Depends(get_portal_state),
) -> PrincipalSummary:
    """Summary of the signed-in principal."""
    return PrincipalSummary(
        name=principal.name,
        objectId=principal.object_id,
        authScheme=principal.find_first(AUTH_SCHEME_CLAIM),
        stepUp=has_step_up(principal),
        roles=principal.roles,
        policies=evaluate_policies(principal, state.settings.APP_ROLES),
        claims=principal.to_list(),
    )


@profile_router.get("/token", response_model=TokenInfo)
async def token_info(
    ticket: SessionTicket = Depends(require_session),
    state=Depends(get_portal_state),
) -> TokenInfo:
    """
    Token page data.

    For the default scheme only, also acquires a downstream access token and
    calls the account API, which returns the token it obtained on behalf of
    the user for the payment API.
    """
    state.telemetry.track_page_view("Token")

    principal = ticket.principal
    info = TokenInfo(
        actAs=_find_claim_ci(principal, "act_as"),
        authScheme=principal.find_first(AUTH_SCHEME_CLAIM),
    )

    try:
        scopes, endpoint = resolve_downstream_api(state.settings.GROCERIES_API, GROCERIES_API_SECTION)
    except ConfigurationError as e:
        info.accessTokenError = e.message
        return info

    if ticket.tokens.id_token:
        info.idToken = ticket.tokens.id_token
        info.idTokenExpiresIn = _format_expiry(ticket.tokens.id_token)
    else:
        info.idToken = "ID token is not available. Please sign-in again."

    if info.authScheme != DEFAULT_SCHEME.value:
        return info

    try:
        bearer = await state.tokens.acquire(ticket, scopes)
    except PortalAuthError as e:
        info.accessTokenError = e.message
        return info

    info.accessToken = bearer.authorization_header

    try:
        response = await state.http_client.get(
            f"{endpoint}{ACCOUNT_OPERATION}",
            headers={"Authorization": bearer.authorization_header},
            timeout=state.settings.HTTP_TIMEOUT_SECONDS,
        )
        response.raise_for_status()
        account = response.json()
    except httpx.HTTPError as e:
        info.downstreamAccessTokenError = str(e)
        return info
    except ValueError as e:
        info.downstreamAccessTokenError = f"Invalid account data: {e}"
        return info

    error = _get_ci(account, "error") if isinstance(account, dict) else None
    payment = _get_ci(account, "payment") if isinstance(account, dict) else None

    if error:
        info.downstreamAccessTokenError = f"Groceries account API returned error: {error}"
    elif isinstance(payment, dict):
        info.downstreamAccessToken = _get_ci(payment, "accessTokenToCallThePaymentAPI") or ""
    else:
        info.downstreamAccessTokenError = "Payment information is missing in the account data."

    return info


@profile_router.get("/userattributes", response_model=None)
async def user_attributes(
    request: Request,
    ticket: SessionTicket = Depends(require_session),
    state=Depends(get_portal_state),
) -> Union[UserAttributes, RedirectResponse]:
    """
    Read the user's profile from the directory.

    A claims challenge returned by the directory re-runs sign-in on the
    default scheme with the challenge attached, returning to the calling page.
    """
    state.telemetry.track_page_view("Profile:UserAttributes")

    try:
        scopes, endpoint = resolve_downstream_api(state.settings.GRAPH_API, GRAPH_API_SECTION)
        bearer = await state.tokens.acquire(ticket, scopes)
        profile = await state.directory.get_me(endpoint, bearer.authorization_header)
    except DownstreamError as e:
        challenge = detect_claims_challenge(e)
        if challenge is not None:
            return state.handlers[DEFAULT_SCHEME].challenge(
                request,
                challenge_properties(challenge),
                return_url=_origin_path(request),
            )
        state.telemetry.track_exception(e, "UserAttributes")
        message = f"{e.code}: {e.message}" if e.code else e.message
        return UserAttributes(error=f"The profile cannot be loaded due to the following error: {message}")
    except PortalAuthError as e:
        return UserAttributes(error=e.message)

    return UserAttributes.model_validate(profile)


@profile_router.post("/verifycode", response_model=VerifyCodeResponse)
async def verify_code(
    body: VerifyCodeRequest,
    principal: Principal = Depends(require_principal),
    ticket: Optional[SessionTicket] = Depends(get_session_ticket),
    state=Depends(get_portal_state),
) -> VerifyCodeResponse:
    """Relay a one-time code to the verification API (step-up required)."""
    return await state.verifier.verify(principal, ticket, body)


# ============================================================================
# Policy-protected Areas
# ============================================================================

@profile_router.get("/access/commercial")
async def commercial_area(principal: Principal = Depends(require_policy(COMMERCIAL_ONLY))) -> Dict[str, Any]:
    return {"policy": COMMERCIAL_ONLY, "name": principal.name}


@profile_router.get("/access/exclusive-demos")
async def exclusive_demos_area(principal: Principal = Depends(require_policy(EXCLUSIVE_DEMOS_ONLY))) -> Dict[str, Any]:
    return {"policy": EXCLUSIVE_DEMOS_ONLY, "name": principal.name}


@profile_router.get("/access/loyalty")
async def loyalty_area(principal: Principal = Depends(require_policy(LOYALTY_ACCESS))) -> Dict[str, Any]:
    return {"policy": LOYALTY_ACCESS, "name": principal.name}
