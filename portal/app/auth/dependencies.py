"""
FastAPI dependencies for authentication.

The session of a request is read by the handler of the scheme the Scheme
Router selects for it. API callers may present a bearer token instead.
"""

import logging
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status

from .claims import Principal
from .errors import ValidationError
from .schemes import select_scheme
from .session import SessionTicket


logger = logging.getLogger(__name__)


def get_portal_state(request: Request):
    """Shared resources created at startup (a PortalState)."""
    return request.app.state.portal


def extract_token_from_header(authorization: Optional[str]) -> Optional[str]:
    """
    Extract Bearer token from Authorization header.

    Returns:
        The token, or None if the header is absent

    Raises:
        HTTPException: If header format is invalid
    """
    if not authorization:
        return None

    parts = authorization.split()

    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid Authorization header format. Expected: 'Bearer <token>'",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return parts[1]


async def get_session_ticket(
    request: Request,
    state=Depends(get_portal_state),
) -> Optional[SessionTicket]:
    """
    Session of the scheme selected for this request, if any.
    """
    scheme = select_scheme(
        request.cookies,
        request.query_params,
        state.settings.COOKIE_PREFIX,
    )
    return state.handlers[scheme].authenticate(request)


async def get_principal(
    ticket: Optional[SessionTicket] = Depends(get_session_ticket),
    authorization: Optional[str] = Header(None),
    state=Depends(get_portal_state),
) -> Optional[Principal]:
    """
    Principal from a bearer token when one is presented, else from the
    session cookie.

    Raises:
        HTTPException: 401 if a bearer token is presented and invalid
    """
    token = extract_token_from_header(authorization)
    if token is not None and state.bearer is not None:
        try:
            return state.bearer.authenticate(token)
        except ValidationError as e:
            logger.warning(f"Invalid bearer token: {e.message}")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid bearer token",
                headers={"WWW-Authenticate": "Bearer"},
            ) from e

    if ticket is not None:
        return ticket.principal
    return None


async def require_principal(
    principal: Optional[Principal] = Depends(get_principal),
) -> Principal:
    """
    Usage in routes:
        @router.get("/protected")
        async def protected_route(principal: Principal = Depends(require_principal)):
            return {"name": principal.name}

    Raises:
        HTTPException: 401 if the request is not authenticated
    """
    if principal is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return principal
