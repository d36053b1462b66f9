"""
Claims principal and post-authentication augmentation.
"""

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple


AUTH_SCHEME_CLAIM = "AuthScheme"

STEP_UP_CLAIM_TYPE = "acrs"
STEP_UP_CLAIM_VALUE = "c1"

# Token-protocol claims; the ID token kept with the session still holds them
PROTOCOL_CLAIMS = frozenset({
    "aud", "iss", "iat", "nbf", "exp", "nonce", "c_hash", "at_hash",
    "aio", "uti", "rh", "ver", "xms_tcdt",
})


@dataclass(frozen=True)
class Claim:
    type: str
    value: str


class Principal:
    """
    Immutable set of claims bound to an authenticated user.

    Multi-valued token claims (``groups``, ``acrs``, ``roles``) become one
    Claim per value.
    """

    def __init__(
        self,
        claims: Iterable[Claim] = (),
        name_claim_type: str = "name",
        role_claim_type: str = "roles",
    ):
        self._claims: Tuple[Claim, ...] = tuple(claims)
        self.name_claim_type = name_claim_type
        self.role_claim_type = role_claim_type

    @classmethod
    def from_token_claims(cls, token_claims: Dict[str, Any], **kwargs) -> "Principal":
        claims: List[Claim] = []
        for claim_type, value in token_claims.items():
            values = value if isinstance(value, (list, tuple)) else [value]
            for item in values:
                if item is None:
                    continue
                if isinstance(item, bool):
                    item = "true" if item else "false"
                claims.append(Claim(claim_type, str(item)))
        return cls(claims, **kwargs)

    @property
    def claims(self) -> Tuple[Claim, ...]:
        return self._claims

    @property
    def name(self) -> Optional[str]:
        return self.find_first(self.name_claim_type)

    @property
    def object_id(self) -> Optional[str]:
        return self.find_first("oid")

    @property
    def roles(self) -> List[str]:
        return self.values(self.role_claim_type)

    def find_first(self, claim_type: str) -> Optional[str]:
        for claim in self._claims:
            if claim.type == claim_type:
                return claim.value
        return None

    def values(self, claim_type: str) -> List[str]:
        return [c.value for c in self._claims if c.type == claim_type]

    def has_claim(self, claim_type: str, value: Optional[str] = None) -> bool:
        return any(
            c.type == claim_type and (value is None or c.value == value)
            for c in self._claims
        )

    def with_claim(self, claim: Claim) -> "Principal":
        return Principal(
            self._claims + (claim,),
            name_claim_type=self.name_claim_type,
            role_claim_type=self.role_claim_type,
        )

    def to_list(self) -> List[List[str]]:
        return [[c.type, c.value] for c in self._claims]

    @classmethod
    def from_list(cls, pairs: Iterable[Iterable[str]], **kwargs) -> "Principal":
        return cls((Claim(t, v) for t, v in pairs), **kwargs)

    def __repr__(self) -> str:
        return f"Principal(name={self.name!r}, claims={len(self._claims)})"


def session_claims(token_claims: Dict[str, Any]) -> Dict[str, Any]:
    """ID token claims without the token-protocol ones."""
    return {k: v for k, v in token_claims.items() if k not in PROTOCOL_CLAIMS}


def augment_principal(principal: Principal, scheme_name: str) -> Principal:
    """
    Record which scheme authenticated the session.

    Runs once, after the ID token passed validation and before the session
    is issued; authorization and downstream API routing branch on it.
    """
    return principal.with_claim(Claim(AUTH_SCHEME_CLAIM, scheme_name))


def has_step_up(principal: Optional[Principal]) -> bool:
    """True if the identity provider asserted the `c1` authentication context."""
    if principal is None:
        return False
    return principal.has_claim(STEP_UP_CLAIM_TYPE, STEP_UP_CLAIM_VALUE)
