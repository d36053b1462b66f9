"""
Claims challenge detection for downstream API errors.

A downstream API that needs a stronger authentication context answers with
an error whose message mentions claims and whose additional data carries the
claims request to send back to the identity provider. That payload is kept
as an opaque string and never parsed.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from .protocol import AuthenticationProperties


logger = logging.getLogger(__name__)

_WWW_AUTHENTICATE_CLAIMS = re.compile(r'claims="([^"]*)"', re.IGNORECASE)


@dataclass(frozen=True)
class ClaimsChallenge:
    claims: str


class DownstreamError(Exception):
    """Error returned by a downstream API (OData error shape)."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        additional_data: Optional[Dict[str, Any]] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.additional_data = additional_data or {}
        self.status_code = status_code

    @classmethod
    def from_response(cls, response: httpx.Response) -> "DownstreamError":
        """
        Build the error from a failed HTTP response.

        Reads ``{"error": {"code": ..., "message": ..., ...}}``. Members other
        than code and message go to ``additional_data``. A ``claims="..."``
        parameter of the WWW-Authenticate header is added under ``claims``
        when the body does not carry one.
        """
        code = None
        message = None
        additional_data: Dict[str, Any] = {}

        try:
            body = response.json()
        except ValueError:
            body = None

        if isinstance(body, dict):
            error = body.get("error")
            if isinstance(error, dict):
                code = error.get("code")
                message = error.get("message")
                additional_data.update(
                    {k: v for k, v in error.items() if k not in ("code", "message")}
                )
            elif isinstance(error, str):
                code = error
                message = body.get("error_description") or body.get("message")

        header = response.headers.get("WWW-Authenticate", "")
        match = _WWW_AUTHENTICATE_CLAIMS.search(header)
        if match and "claims" not in additional_data:
            additional_data["claims"] = match.group(1)

        if not message:
            message = response.text or f"HTTP {response.status_code}"

        return cls(
            message=message,
            code=code,
            additional_data=additional_data,
            status_code=response.status_code,
        )


def detect_claims_challenge(error: Any) -> Optional[ClaimsChallenge]:
    """
    Detect a claims challenge in a downstream error.

    A challenge is returned only when the message contains "claims"
    (case-insensitive) and ``additional_data["claims"]`` is a string.

    Args:
        error: Error exposing ``message`` and ``additional_data``

    Returns:
        ClaimsChallenge carrying the payload verbatim, or None
    """
    message = getattr(error, "message", None)
    additional_data = getattr(error, "additional_data", None)

    if not isinstance(message, str) or "claims" not in message.lower():
        return None
    if not isinstance(additional_data, dict):
        return None

    claims = additional_data.get("claims")
    if not isinstance(claims, str):
        return None

    logger.info("Claims challenge detected", extra={"error_code": getattr(error, "code", None)})
    return ClaimsChallenge(claims)


def challenge_properties(challenge: ClaimsChallenge) -> AuthenticationProperties:
    """Sign-in properties that round-trip the challenge to the identity provider."""
    return AuthenticationProperties(claims=challenge.claims)
