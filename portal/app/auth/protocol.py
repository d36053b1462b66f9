"""
Sign-in redirect message and its per-request customization.

A ``ProtocolMessage`` is the authorization request about to be sent to the
identity provider. ``customize`` applies the ``AuthenticationProperties`` of
one sign-in attempt to it before the redirect is issued.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Set
from urllib.parse import quote, urlsplit, urlunsplit

from pydantic import BaseModel, ConfigDict, Field


logger = logging.getLogger(__name__)


# Request the `c1` authentication context as an essential claim
STEP_UP_CLAIMS_JSON = json.dumps(
    {"access_token": {"acrs": {"essential": True, "value": "c1"}}},
    separators=(",", ":"),
)
STEP_UP_CLAIMS = quote(STEP_UP_CLAIMS_JSON, safe="")

# Parameters the sign-in flow depends on; `query-string` never replaces them
RESERVED_PARAMETERS = frozenset({
    "client_id", "response_type", "redirect_uri", "response_mode", "scope",
    "state", "nonce", "code_challenge", "code_challenge_method",
})


class AuthenticationProperties(BaseModel):
    """
    Properties attached to a single sign-in redirect.

    Unknown keys are rejected. A key counts as present when its value is
    not None, so an empty ``force=`` still forces re-authentication.
    """

    model_config = ConfigDict(extra="forbid", populate_by_name=True, frozen=True)

    force: Optional[str] = None
    step_up: Optional[str] = Field(None, alias="StepUp")
    domain: Optional[str] = None
    prompt: Optional[str] = None
    ui_locales: Optional[str] = None
    login_hint: Optional[str] = None
    domain_hint: Optional[str] = None
    query_string: Optional[str] = Field(None, alias="query-string")
    claims: Optional[str] = Field(
        None,
        description="Claims-challenge payload returned by a downstream API (opaque)",
    )

    @classmethod
    def from_items(cls, items: Mapping[str, str]) -> "AuthenticationProperties":
        """
        Build properties from a string-keyed mapping.

        Raises:
            pydantic.ValidationError: If an unknown key is present
        """
        return cls.model_validate(dict(items))


@dataclass
class ProtocolMessage:
    """OIDC authorization request under construction."""

    issuer_address: str
    parameters: Dict[str, str] = field(default_factory=dict)
    encoded: Set[str] = field(default_factory=set)

    def set_parameter(self, name: str, value: str) -> None:
        self.parameters[name] = value
        self.encoded.discard(name)

    def set_encoded_parameter(self, name: str, value: str) -> None:
        """Set a value that is already percent-encoded."""
        self.parameters[name] = value
        self.encoded.add(name)

    def _get(self, name: str) -> Optional[str]:
        return self.parameters.get(name)

    @property
    def prompt(self) -> Optional[str]:
        return self._get("prompt")

    @prompt.setter
    def prompt(self, value: str) -> None:
        self.set_parameter("prompt", value)

    @property
    def ui_locales(self) -> Optional[str]:
        return self._get("ui_locales")

    @ui_locales.setter
    def ui_locales(self, value: str) -> None:
        self.set_parameter("ui_locales", value)

    @property
    def login_hint(self) -> Optional[str]:
        return self._get("login_hint")

    @login_hint.setter
    def login_hint(self, value: str) -> None:
        self.set_parameter("login_hint", value)

    @property
    def domain_hint(self) -> Optional[str]:
        return self._get("domain_hint")

    @domain_hint.setter
    def domain_hint(self, value: str) -> None:
        self.set_parameter("domain_hint", value)

    def create_authentication_request_url(self) -> str:
        """
        Serialize the message into the redirect URL.

        Values are percent-encoded once; values set with
        ``set_encoded_parameter`` are written as they are.
        """
        pairs = []
        for name, value in self.parameters.items():
            if name not in self.encoded:
                value = quote(value, safe="")
            pairs.append(f"{quote(name, safe='')}={value}")
        query = "&".join(pairs)
        separator = "&" if "?" in self.issuer_address else "?"
        return f"{self.issuer_address}{separator}{query}"


def _replace_host(url: str, domain: str) -> str:
    parts = urlsplit(url)
    netloc = domain if parts.port is None else f"{domain}:{parts.port}"
    return urlunsplit(parts._replace(netloc=netloc))


def _parse_query_string(query_string: str) -> Dict[str, str]:
    extra = {}
    for pair in query_string.split("&"):
        kv = pair.split("=")
        if len(kv) == 2:
            extra[kv[0]] = kv[1]
    return extra


def customize(
    message: ProtocolMessage,
    properties: AuthenticationProperties,
) -> ProtocolMessage:
    """
    Apply sign-in properties to an authorization request.

    Order matters in two places: ``prompt`` is applied after ``force`` and
    wins over it, and ``claims`` is applied after ``StepUp`` and replaces
    its claims parameter.

    Args:
        message: Authorization request to modify
        properties: Properties of this sign-in attempt

    Returns:
        The same message, modified
    """
    if properties.force is not None:
        message.prompt = "login"

    if properties.step_up is not None:
        message.set_encoded_parameter("claims", STEP_UP_CLAIMS)

    if properties.claims is not None:
        message.set_parameter("claims", properties.claims)

    if properties.domain is not None:
        message.issuer_address = _replace_host(message.issuer_address, properties.domain)

    if properties.prompt is not None:
        message.prompt = properties.prompt

    if properties.ui_locales is not None:
        message.set_parameter("mkt", properties.ui_locales)
        message.ui_locales = properties.ui_locales

    if properties.login_hint is not None:
        message.login_hint = properties.login_hint

    if properties.domain_hint is not None:
        message.domain_hint = properties.domain_hint

    if properties.query_string is not None:
        for name, value in _parse_query_string(properties.query_string).items():
            if name in message.parameters or name in RESERVED_PARAMETERS:
                logger.debug(f"Ignoring query-string parameter {name!r}: already set")
                continue
            message.set_parameter(name, value)

    return message
