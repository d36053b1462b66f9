"""
Issuer metadata and signing-key resolution.

This module handles:
- Fetching the OpenID configuration document of an authority/policy
- Fetching the JWKS (JSON Web Key Set) it points to
- Caching the result per (authority, policy)

Entries are resolved once at startup and never invalidated. Two concurrent
first resolutions of the same key may both fetch; the second result simply
replaces the first.
"""

import dataclasses
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlsplit

import httpx

from .errors import MetadataError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IssuerConfig:
    """Validation keys, issuer and endpoints of one authority/policy."""

    issuer: str
    signing_keys: Tuple[Dict[str, Any], ...]
    authorization_endpoint: str
    token_endpoint: str
    jwks_uri: str
    userinfo_endpoint: Optional[str] = None
    end_session_endpoint: Optional[str] = None

    def find_signing_key(self, kid: str) -> Optional[Dict[str, Any]]:
        for key in self.signing_keys:
            if key.get("kid") == kid:
                return key
        return None

    def with_overrides(self, **overrides: str) -> "IssuerConfig":
        return dataclasses.replace(self, **overrides) if overrides else self


def metadata_address(authority: str, policy: Optional[str] = None) -> str:
    """
    Build the OpenID configuration document URL.

    Args:
        authority: Authority URL
        policy: Optional user flow / policy name

    Returns:
        ``{authority}/v2.0/.well-known/openid-configuration[?p={policy}]``
    """
    address = f"{authority.rstrip('/')}/v2.0/.well-known/openid-configuration"
    if policy:
        address = f"{address}?p={policy}"
    return address


def _require_https(url: str) -> None:
    if urlsplit(url).scheme != "https":
        raise MetadataError(f"Metadata must be retrieved over HTTPS: {url}")


class IssuerConfigResolver:
    """
    Resolve and cache issuer configuration.

    Attributes:
        http_client: Shared HTTP client (TLS 1.2+)
        timeout: Per-request timeout in seconds
    """

    def __init__(self, http_client: httpx.AsyncClient, timeout: float = 10.0):
        self.http_client = http_client
        self.timeout = timeout
        self._cache: Dict[Tuple[str, Optional[str]], IssuerConfig] = {}

    def cached(self, authority: str, policy: Optional[str] = None) -> Optional[IssuerConfig]:
        return self._cache.get((authority, policy))

    async def resolve(
        self,
        authority: str,
        policy: Optional[str] = None,
        *,
        address: Optional[str] = None,
        jwks_uri: Optional[str] = None,
    ) -> IssuerConfig:
        """
        Resolve the issuer configuration of an authority/policy.

        Args:
            authority: Authority URL
            policy: Optional user flow / policy name
            address: Explicit metadata document URL
            jwks_uri: Explicit JWKS URL replacing the document's jwks_uri

        Returns:
            IssuerConfig with signing keys loaded

        Raises:
            MetadataError: On non-HTTPS addresses, network or parse failures
        """
        key = (authority, policy)
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        document_url = address or metadata_address(authority, policy)
        document = await self._get_json(document_url)

        missing = [
            name for name in ("issuer", "authorization_endpoint", "token_endpoint", "jwks_uri")
            if not document.get(name)
        ]
        if missing and not (missing == ["jwks_uri"] and jwks_uri):
            raise MetadataError(
                f"OpenID configuration at {document_url} is missing: {', '.join(missing)}"
            )

        keys_url = jwks_uri or document["jwks_uri"]
        jwks = await self._get_json(keys_url)
        keys = jwks.get("keys")
        if not isinstance(keys, list):
            raise MetadataError(f"Invalid JWKS response from {keys_url}: missing 'keys' field")

        config = IssuerConfig(
            issuer=document["issuer"],
            signing_keys=tuple(keys),
            authorization_endpoint=document["authorization_endpoint"],
            token_endpoint=document["token_endpoint"],
            jwks_uri=keys_url,
            userinfo_endpoint=document.get("userinfo_endpoint"),
            end_session_endpoint=document.get("end_session_endpoint"),
        )

        self._cache[key] = config
        logger.info(
            "Resolved issuer configuration",
            extra={"authority": authority, "policy": policy, "key_count": len(keys)},
        )
        return config

    async def _get_json(self, url: str) -> Dict[str, Any]:
        _require_https(url)
        try:
            response = await self.http_client.get(url, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            raise MetadataError(f"Unable to retrieve {url}: {e}") from e
        except ValueError as e:
            raise MetadataError(f"Invalid JSON returned by {url}: {e}") from e

        if not isinstance(data, dict):
            raise MetadataError(f"Unexpected document returned by {url}")
        return data
