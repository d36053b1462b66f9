"""
ID token and bearer token validation.

This module handles:
- Selecting the signing key that matches a token's ``kid``
- Verifying RS256 signatures with python-jose
- Validating issuer, audience, lifetime and nonce
"""

import logging
from typing import Any, Dict, Iterable, Optional, Sequence

from jose import jwk, jwt, JWTError
from jose.exceptions import JOSEError

from .claims import Principal
from .errors import ValidationError
from .metadata import IssuerConfig


logger = logging.getLogger(__name__)

# Clock skew tolerance in seconds
DEFAULT_LEEWAY = 10


def get_signing_key(token: str, config: IssuerConfig) -> Dict[str, Any]:
    """
    Find the JWK from the issuer's key set that matches the token's kid.

    Args:
        token: JWT string
        config: Issuer configuration holding the signing keys

    Returns:
        Matching JWK

    Raises:
        ValidationError: If the header is malformed or no key matches
    """
    try:
        unverified_header = jwt.get_unverified_header(token)
    except JWTError as e:
        raise ValidationError(f"Failed to decode token header: {e}") from e

    kid = unverified_header.get("kid")
    if not kid:
        raise ValidationError("Token header missing 'kid' (Key ID)")

    signing_key = config.find_signing_key(kid)
    if signing_key is None:
        raise ValidationError(
            "Unable to find matching signing key. "
            "Token may be from a different tenant or keys may have rotated."
        )
    return signing_key


class TokenValidator:
    """
    Validate JWTs against one issuer configuration.

    Attributes:
        config: Issuer configuration (issuer and signing keys)
        valid_audiences: Accepted ``aud`` values
        valid_issuers: Accepted ``iss`` values (defaults to the config issuer)
        leeway: Clock skew tolerance in seconds
    """

    def __init__(
        self,
        config: IssuerConfig,
        valid_audiences: Sequence[str],
        valid_issuers: Optional[Sequence[str]] = None,
        leeway: int = DEFAULT_LEEWAY,
    ):
        self.config = config
        self.valid_audiences = tuple(valid_audiences)
        self.valid_issuers = tuple(valid_issuers or (config.issuer,))
        self.leeway = leeway

    def validate(self, token: str) -> Dict[str, Any]:
        """
        Verify and decode a token.

        Args:
            token: JWT string

        Returns:
            Verified token claims

        Raises:
            ValidationError: If signature, issuer, audience or lifetime is invalid
        """
        signing_key = get_signing_key(token, self.config)

        try:
            public_key = jwk.construct(signing_key, algorithm="RS256")
        except JOSEError as e:
            raise ValidationError(f"Failed to construct public key from JWK: {e}") from e

        try:
            claims = jwt.decode(
                token,
                public_key.to_pem().decode("utf-8"),
                algorithms=["RS256"],
                options={
                    "verify_signature": True,
                    "verify_aud": False,
                    "verify_iss": False,
                    "verify_iat": True,
                    "verify_exp": True,
                    "verify_nbf": True,
                    "verify_at_hash": False,
                    "require_exp": True,
                    "leeway": self.leeway,
                },
            )
        except jwt.ExpiredSignatureError as e:
            raise ValidationError("Token has expired") from e
        except jwt.JWTClaimsError as e:
            raise ValidationError(f"Invalid token claims: {e}") from e
        except JWTError as e:
            raise ValidationError(f"Token verification failed: {e}") from e

        issuer = claims.get("iss")
        if issuer not in self.valid_issuers:
            raise ValidationError(f"Invalid issuer: {issuer}")

        if not _audience_matches(claims.get("aud"), self.valid_audiences):
            raise ValidationError(f"Invalid audience: {claims.get('aud')}")

        return claims


def _audience_matches(audience: Any, valid_audiences: Iterable[str]) -> bool:
    if audience is None:
        return False
    audiences = audience if isinstance(audience, list) else [audience]
    return any(aud in valid_audiences for aud in audiences)


def validate_nonce(claims: Dict[str, Any], expected_nonce: Optional[str]) -> None:
    """
    Validate the nonce claim against the one sent with the sign-in request.

    Raises:
        ValidationError: On mismatch or when either side is missing
    """
    token_nonce = claims.get("nonce")
    if not token_nonce or not expected_nonce or token_nonce != expected_nonce:
        raise ValidationError("Nonce mismatch")


# =============================================================================
# Bearer Token Authentication
# =============================================================================

class JwtBearerAuthenticator:
    """
    Authenticate API callers presenting an access token.

    The principal's name claim is ``oid``, so ``principal.name`` is the
    caller's object id.
    """

    def __init__(self, validator: TokenValidator):
        self.validator = validator

    def authenticate(self, token: str) -> Principal:
        """
        Raises:
            ValidationError: If the token is not valid
        """
        claims = self.validator.validate(token)
        logger.debug("Bearer token validated", extra={"oid": claims.get("oid")})
        return Principal.from_token_claims(claims, name_claim_type="oid")
