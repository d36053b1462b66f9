"""
Step-Up Verifier Gateway.

Relays a one-time code to the downstream verification API, only for
sessions that already carry the step-up assurance claim. One attempt moves
through these states:

    Start -> Rejected                          (no acrs=c1, no network call)
    Start -> TokenError                        (token exchange failed)
    Start -> TokenAcquired -> NetworkError     (POST failed)
    Start -> TokenAcquired -> ResponseReceived (validation passed or failed)

Every terminal state produces a VerifyCodeResponse. When validation passed,
the verified factor is written to the directory; a failed write is logged
and never changes the response.
"""

import logging
from typing import Optional

import httpx

from ..auth.claims import Principal, has_step_up
from ..auth.errors import ConfigurationError, CredentialError, NetworkError
from ..auth.session import SessionTicket
from ..auth.tokens import DownstreamTokenProvider, resolve_downstream_api
from ..config import DownstreamApiSettings
from ..models import (
    AuthMethodType,
    DownstreamVerifyResult,
    VerificationStatus,
    VerifyCodeRequest,
    VerifyCodeResponse,
)
from ..telemetry import Telemetry
from .directory import DirectoryClient


logger = logging.getLogger(__name__)

MFA_REQUIRED_MESSAGE = "Multi-factor authentication is required for this operation"

VERIFY_CODE_OPERATION = "VerifyCode"


class StepUpVerifier:
    """
    Args:
        http_client: Shared HTTP client
        tokens: Token exchange facade
        directory: Directory client for profile writes
        api: Downstream account API settings
        telemetry: Telemetry sink
        section: Settings section name used in configuration messages
        timeout: Per-request timeout in seconds
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        tokens: DownstreamTokenProvider,
        directory: DirectoryClient,
        api: DownstreamApiSettings,
        telemetry: Telemetry,
        section: str = "GroceriesApi",
        timeout: float = 10.0,
    ):
        self.http_client = http_client
        self.tokens = tokens
        self.directory = directory
        self.api = api
        self.telemetry = telemetry
        self.section = section
        self.timeout = timeout

    async def verify(
        self,
        principal: Principal,
        ticket: Optional[SessionTicket],
        request: VerifyCodeRequest,
    ) -> VerifyCodeResponse:
        """
        Run one verification attempt.

        Args:
            principal: Current principal
            ticket: Current session (holds the refresh token)
            request: Code submitted by the browser

        Returns:
            VerifyCodeResponse for the terminal state reached
        """
        self.telemetry.track_page_view("Profile:VerifyCode")

        if not has_step_up(principal):
            logger.info("Verification rejected: step-up required", extra={"oid": principal.object_id})
            return VerifyCodeResponse(
                status=VerificationStatus.AUTHORIZATION_ERROR,
                message=MFA_REQUIRED_MESSAGE,
            )

        try:
            scopes, endpoint = resolve_downstream_api(self.api, self.section)
        except ConfigurationError as e:
            return VerifyCodeResponse(status=VerificationStatus.CONFIGURATION_ERROR, message=e.message)

        try:
            token = await self.tokens.acquire(ticket, scopes)
        except CredentialError as e:
            return VerifyCodeResponse(status=VerificationStatus.CREDENTIAL_ERROR, message=e.message)
        except ConfigurationError as e:
            return VerifyCodeResponse(status=VerificationStatus.CONFIGURATION_ERROR, message=e.message)
        except NetworkError as e:
            return VerifyCodeResponse(status=VerificationStatus.NETWORK_ERROR, message=e.message)

        try:
            response = await self.http_client.post(
                f"{endpoint}{VERIFY_CODE_OPERATION}",
                json=request.model_dump(mode="json"),
                headers={"Authorization": token.authorization_header},
                timeout=self.timeout,
            )
            response.raise_for_status()
            result = DownstreamVerifyResult.model_validate(response.json())
        except httpx.HTTPError as e:
            logger.error(f"VerifyCode request failed: {e}")
            return VerifyCodeResponse(status=VerificationStatus.NETWORK_ERROR, message=str(e))
        except ValueError as e:
            logger.error(f"VerifyCode returned an invalid response: {e}")
            return VerifyCodeResponse(
                status=VerificationStatus.NETWORK_ERROR,
                message="The verification service returned an invalid response.",
            )

        if result.validationPassed:
            await self._update_directory(principal, result)

        return VerifyCodeResponse(
            status=(
                VerificationStatus.SUCCESS
                if result.validationPassed
                else VerificationStatus.VALIDATION_FAILED
            ),
            validationPassed=result.validationPassed,
            authType=result.authType,
            authValue=result.authValue,
            message=result.message or "",
        )

    async def _update_directory(self, principal: Principal, result: DownstreamVerifyResult) -> None:
        user_id = principal.object_id
        if not user_id or not result.authValue:
            logger.warning("Skipping directory update: missing object id or verified value")
            return

        # A failed directory update never fails the verification
        try:
            if result.authType == AuthMethodType.SIGN_IN_EMAIL:
                await self.directory.update_sign_in_email(user_id, result.authValue)
            elif result.authType == AuthMethodType.EMAIL_MFA:
                await self.directory.upsert_email_method(user_id, result.authValue)
        except Exception as e:
            logger.error(
                f"Directory update failed: {e}",
                extra={"oid": user_id, "auth_type": result.authType.value if result.authType else None},
            )
            self.telemetry.track_exception(e, "VerifyCode")
