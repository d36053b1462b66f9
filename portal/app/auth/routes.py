"""
Authentication routes for sign-in, callback, sign-out and the error page.

Sign-in and sign-out are dispatched to the scheme chosen by the Scheme
Router; every scheme has its own callback path.
"""

import html
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import HTMLResponse, RedirectResponse
from pydantic import ValidationError as PropertiesValidationError

from .dependencies import get_portal_state
from .protocol import AuthenticationProperties
from .schemes import AuthScheme, select_scheme


logger = logging.getLogger(__name__)


# =============================================================================
# Router Setup
# =============================================================================

auth_router = APIRouter(
    prefix="/auth",
    tags=["authentication"],
)

# Query parameters consumed by the sign-in route itself
_SIGNIN_RESERVED = ("handler", "redirect_uri")


# =============================================================================
# Sign-in Endpoint
# =============================================================================

@auth_router.get("/signin", response_class=RedirectResponse)
async def signin(request: Request, state=Depends(get_portal_state)):
    """
    Start sign-in with the identity provider.

    Query Parameters:
        handler: Optional scheme override (ArkoseFraudProtection, EmailOtp)
        redirect_uri: Local path to return to after sign-in
        force, StepUp, domain, prompt, ui_locales, login_hint, domain_hint,
        query-string, claims: Sign-in properties

    Returns:
        RedirectResponse to the selected scheme's authorization endpoint

    Raises:
        HTTPException: 400 if an unknown sign-in property is supplied
    """
    scheme = select_scheme(request.cookies, request.query_params, state.settings.COOKIE_PREFIX)

    items = {
        key: value
        for key, value in request.query_params.items()
        if key not in _SIGNIN_RESERVED
    }

    try:
        properties = AuthenticationProperties.from_items(items)
    except PropertiesValidationError as e:
        unknown = sorted(str(err["loc"][0]) for err in e.errors() if err.get("loc"))
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unsupported sign-in properties: {', '.join(unknown)}",
        ) from e

    state.telemetry.track_page_view("SignIn", {"scheme": scheme.value})

    return state.handlers[scheme].challenge(
        request,
        properties,
        return_url=request.query_params.get("redirect_uri"),
    )


# =============================================================================
# Callback Endpoint
# =============================================================================

@auth_router.get("/callback/{scheme}", response_class=RedirectResponse)
async def callback(scheme: str, request: Request, state=Depends(get_portal_state)):
    """
    Handle the authorization response of one scheme.

    Returns:
        Redirect to the return URL, or to the error page on failure
    """
    try:
        auth_scheme = AuthScheme(scheme)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown scheme")

    return await state.handlers[auth_scheme].handle_callback(request)


# =============================================================================
# Sign-out Endpoint
# =============================================================================

@auth_router.get("/signout", response_class=RedirectResponse)
async def signout(request: Request, state=Depends(get_portal_state)):
    """Sign out of the scheme selected for this request."""
    scheme = select_scheme(request.cookies, request.query_params, state.settings.COOKIE_PREFIX)
    return state.handlers[scheme].sign_out(request)


# =============================================================================
# Error Page
# =============================================================================

@auth_router.get("/error", response_class=HTMLResponse)
async def error_page(
    error: Optional[str] = Query(None, description="Error code"),
    description: Optional[str] = Query(None, description="Error description"),
):
    return _render_error_page(
        title="Sign-in Failed",
        error=error or "unknown_error",
        message=description or "An unexpected error occurred during sign-in.",
    )


def _render_error_page(title: str, error: str, message: str, status_code: int = 400) -> HTMLResponse:
    """
    Render error page for authentication failures.

    Args:
        title: Error title
        error: Error code
        message: Error description (escaped before rendering)
        status_code: HTTP status code

    Returns:
        HTMLResponse with error information
    """
    html_content = f"""
    <!DOCTYPE html>
    <html lang="en">
    <head>
        <meta charset="UTF-8">
        <meta name="viewport" content="width=device-width, initial-scale=1.0">
        <title>{html.escape(title)}</title>
        <style>
            * {{ margin: 0; padding: 0; box-sizing: border-box; }}
            body {{
                font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, Helvetica, Arial, sans-serif;
                background: #f3f4f6;
                min-height: 100vh;
                display: flex;
                align-items: center;
                justify-content: center;
                padding: 20px;
            }}
            .container {{
                background: white;
                border-radius: 12px;
                padding: 40px;
                max-width: 560px;
                width: 100%;
                box-shadow: 0 10px 40px rgba(0,0,0,0.1);
            }}
            h1 {{ color: #1f2937; font-size: 24px; margin-bottom: 16px; }}
            .code {{ color: #ef4444; font-family: monospace; margin-bottom: 12px; }}
            .message {{ color: #6b7280; font-size: 16px; line-height: 1.6; margin-bottom: 32px; }}
            .button {{
                display: inline-block;
                background: #2563eb;
                color: white;
                padding: 12px 28px;
                border-radius: 8px;
                text-decoration: none;
                font-weight: 600;
            }}
        </style>
    </head>
    <body>
        <div class="container">
            <h1>{html.escape(title)}</h1>
            <p class="code">{html.escape(error)}</p>
            <p class="message">{html.escape(message)}</p>
            <a href="/auth/signin" class="button">Try Again</a>
        </div>
    </body>
    </html>
    """

    return HTMLResponse(content=html_content, status_code=status_code)
