"""
Directory client (Microsoft Graph).

Reads the signed-in user's profile with a delegated token and writes the
sign-in email and email MFA method with an app-only token.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence

import httpx

from ..auth.challenge import DownstreamError
from ..auth.errors import NetworkError
from ..auth.tokens import DownstreamTokenProvider


logger = logging.getLogger(__name__)

PROFILE_SELECT = "id,displayName,givenName,surname,mail,country,city"
IDENTITIES_SELECT = "id,identities,mail,userPrincipalName,userType"


class DirectoryError(Exception):
    """The directory rejected or could not serve a request."""


class DirectoryClient:
    """
    Graph v1.0 client.

    Args:
        http_client: Shared HTTP client
        tokens: Token provider used for app-only calls
        endpoint: Graph endpoint for app-only writes (no trailing slash)
        app_scopes: Scopes of the app-only token (``.../.default``)
        timeout: Per-request timeout in seconds
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        tokens: DownstreamTokenProvider,
        endpoint: str,
        app_scopes: Sequence[str],
        timeout: float = 10.0,
    ):
        self.http_client = http_client
        self.tokens = tokens
        self.endpoint = endpoint.rstrip("/")
        self.app_scopes = list(app_scopes)
        self.timeout = timeout

    async def _send(
        self,
        method: str,
        url: str,
        authorization: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, str]] = None,
    ) -> Optional[Dict[str, Any]]:
        try:
            response = await self.http_client.request(
                method,
                url,
                json=json,
                params=params,
                headers={"Authorization": authorization, "Accept": "application/json"},
                timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            raise NetworkError(f"Unable to reach the directory service: {e}") from e

        if not response.is_success:
            raise DownstreamError.from_response(response)

        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    # -------------------------------------------------------------------------
    # Delegated
    # -------------------------------------------------------------------------

    async def get_me(self, endpoint: str, authorization: str) -> Dict[str, Any]:
        """
        Read the signed-in user's profile.

        Args:
            endpoint: Delegated Graph endpoint (GRAPH_API.ENDPOINT)
            authorization: ``Bearer <token>`` header for the user

        Raises:
            DownstreamError: The directory returned an error (may carry a claims challenge)
            NetworkError: The directory could not be reached
        """
        url = f"{endpoint.rstrip('/')}/me"
        return await self._send("GET", url, authorization, params={"$select": PROFILE_SELECT}) or {}

    # -------------------------------------------------------------------------
    # App-only
    # -------------------------------------------------------------------------

    async def _app_authorization(self) -> str:
        token = await self.tokens.acquire_for_app(self.app_scopes)
        return token.authorization_header

    async def update_sign_in_email(self, user_id: str, email: str) -> None:
        """
        Replace the user's sign-in email identity, mail and other mails.

        Raises:
            DirectoryError: The user has no identities
            DownstreamError: Graph rejected a request
        """
        authorization = await self._app_authorization()
        user_url = f"{self.endpoint}/users/{user_id}"

        profile = await self._send("GET", user_url, authorization, params={"$select": IDENTITIES_SELECT})
        identities: List[Dict[str, Any]] = list((profile or {}).get("identities") or [])
        if not identities:
            raise DirectoryError("The user profile is not available or does not contain identities.")

        federated = next((i for i in identities if i.get("signInType") == "federated"), None)
        if federated is not None:
            federated["issuerAssignedId"] = email
        else:
            issuer = next(
                (i.get("issuer") for i in identities if i.get("signInType") == "userPrincipalName"),
                identities[0].get("issuer"),
            )
            identities.append({
                "signInType": "emailAddress",
                "issuer": issuer,
                "issuerAssignedId": email,
            })

        await self._send(
            "PATCH",
            user_url,
            authorization,
            json={"identities": identities, "mail": email, "otherMails": [email]},
        )
        logger.info("Updated sign-in email", extra={"oid": user_id})

    async def upsert_email_method(self, user_id: str, email: str) -> None:
        """
        Update the user's first email authentication method, or add one.

        Raises:
            DownstreamError: Graph rejected a request
            DirectoryError: The existing method has no id
        """
        authorization = await self._app_authorization()
        methods_url = f"{self.endpoint}/users/{user_id}/authentication/emailMethods"
        body = {"emailAddress": email}

        result = await self._send("GET", methods_url, authorization) or {}
        methods = (result.get("value") if isinstance(result, dict) else None) or []

        if methods:
            method_id = methods[0].get("id") if isinstance(methods[0], dict) else None
            if not method_id:
                raise DirectoryError("The email authentication method has no id.")
            await self._send("PATCH", f"{methods_url}/{method_id}", authorization, json=body)
        else:
            await self._send("POST", methods_url, authorization, json=body)

        logger.info("Updated email MFA method", extra={"oid": user_id, "added": not methods})
