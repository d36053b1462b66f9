"""
Telemetry sink.

Page views and exceptions are written as structured log records on the
``portal.telemetry`` logger. Recording never raises into the caller.
"""

import logging
from typing import Any, Dict, Optional


logger = logging.getLogger("portal.telemetry")


class Telemetry:
    """
    Fire-and-forget event recorder.

    Attributes:
        enabled: When False every call is a no-op
    """

    def __init__(self, enabled: bool = True):
        self.enabled = enabled

    def track_page_view(self, name: str, properties: Optional[Dict[str, Any]] = None) -> None:
        if not self.enabled:
            return
        try:
            logger.info(
                f"PageView {name}",
                extra={"event": "page_view", "page": name, "properties": dict(properties or {})},
            )
        except Exception as e:
            logger.debug(f"Failed to record page view: {e}")

    def track_exception(self, exc: BaseException, where: str) -> None:
        if not self.enabled:
            return
        try:
            logger.warning(
                f"Exception in {where}: {type(exc).__name__}: {exc}",
                extra={"event": "exception", "location": where, "exception_type": type(exc).__name__},
            )
        except Exception as e:
            logger.debug(f"Failed to record exception: {e}")

    def track_auth_error(
        self,
        error: Optional[str],
        description: Optional[str],
        error_code: Optional[str],
    ) -> None:
        """Record a failed sign-in as an ``AuthError`` page view."""
        self.track_page_view(
            "AuthError",
            {
                "Error": error or "",
                "ErrorDescription": description or "",
                "ErrorCode": error_code or "",
            },
        )
