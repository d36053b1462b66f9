"""
Session Ticket Management Module
================================

Handles creation and verification of the per-scheme session cookie value.

A ticket carries the scheme that authenticated the user, the augmented
principal and the tokens returned by the identity provider. It is signed as
an HS256 JWT and then encrypted, so the refresh token it holds is never
readable from the browser.

Values longer than one cookie allows are split across chunk cookies
``<name>C1`` .. ``<name>Cn``; the base cookie then holds ``chunks-<n>``.
"""

import base64
import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple

import jwt
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from jwt.exceptions import InvalidTokenError

from .claims import Principal
from .schemes import AuthScheme


logger = logging.getLogger(__name__)

TICKET_ISSUER = "identity-portal"

# Browsers drop cookies whose name and value exceed 4096 bytes
MAX_COOKIE_SIZE = 4050
CHUNK_COUNT_PREFIX = "chunks-"


# =============================================================================
# Key Derivation
# =============================================================================

def derive_key(secret: str, purpose: str) -> bytes:
    """
    Derive a 32-byte subkey of SESSION_SECRET for one purpose.

    Args:
        secret: SESSION_SECRET
        purpose: "ticket-signing", "ticket-encryption" or "flow-cookie"
    """
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=None,
        info=f"{TICKET_ISSUER}/{purpose}".encode("utf-8"),
    )
    return hkdf.derive(secret.encode("utf-8"))


def flow_cookie_key(secret: str) -> str:
    """Signing key of the in-flight sign-in cookie."""
    return base64.urlsafe_b64encode(derive_key(secret, "flow-cookie")).decode("ascii")


# =============================================================================
# Ticket Model
# =============================================================================

@dataclass(frozen=True)
class SessionTokens:
    """Tokens stored with the session. Access tokens are never stored."""

    id_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass(frozen=True)
class SessionTicket:
    """An authenticated session of one scheme."""

    scheme: AuthScheme
    principal: Principal
    tokens: SessionTokens = field(default_factory=SessionTokens)
    issued_at: int = field(default_factory=lambda: int(time.time()))


# =============================================================================
# Codec
# =============================================================================

class SessionTicketCodec:
    """
    Encode and decode session tickets.

    Args:
        secret: SESSION_SECRET (separate signing and encryption keys are derived from it)
        expiry_minutes: Ticket lifetime
    """

    def __init__(self, secret: str, expiry_minutes: int = 60):
        self._signing_key = derive_key(secret, "ticket-signing")
        self._fernet = Fernet(base64.urlsafe_b64encode(derive_key(secret, "ticket-encryption")))
        self.expiry_minutes = expiry_minutes

    @property
    def max_age_seconds(self) -> int:
        return self.expiry_minutes * 60

    def encode(self, ticket: SessionTicket) -> str:
        """
        Serialize a ticket into a cookie value.

        Args:
            ticket: Session ticket

        Returns:
            Encrypted, URL-safe cookie value
        """
        now = datetime.now(timezone.utc)
        payload = {
            "iss": TICKET_ISSUER,
            "iat": now,
            "exp": now + timedelta(minutes=self.expiry_minutes),
            "scheme": ticket.scheme.value,
            "claims": ticket.principal.to_list(),
            "name_claim_type": ticket.principal.name_claim_type,
            "tokens": ticket.tokens.to_dict(),
            "auth_time": ticket.issued_at,
        }

        token = jwt.encode(payload, self._signing_key, algorithm="HS256")

        logger.debug(
            "Created session ticket",
            extra={"scheme": ticket.scheme.value, "expires_in_minutes": self.expiry_minutes},
        )

        return self._fernet.encrypt(token.encode("utf-8")).decode("ascii")

    def decode(self, value: Optional[str]) -> Optional[SessionTicket]:
        """
        Decrypt and verify a cookie value.

        Returns:
            The ticket, or None if the value is missing, tampered with or expired
        """
        if not value:
            return None

        try:
            token = self._fernet.decrypt(value.encode("ascii")).decode("utf-8")
            decoded = jwt.decode(
                token,
                self._signing_key,
                algorithms=["HS256"],
                issuer=TICKET_ISSUER,
                options={"require": ["exp", "iat", "iss", "scheme", "claims"]},
            )
            scheme = AuthScheme(decoded["scheme"])
        except (InvalidToken, UnicodeError) as e:
            logger.warning(f"Unreadable session cookie: {type(e).__name__}")
            return None
        except InvalidTokenError as e:
            logger.warning(f"Invalid session ticket: {e}")
            return None
        except ValueError as e:
            logger.warning(f"Invalid session scheme: {e}")
            return None

        principal = Principal.from_list(
            decoded["claims"],
            name_claim_type=decoded.get("name_claim_type", "name"),
        )
        return SessionTicket(
            scheme=scheme,
            principal=principal,
            tokens=SessionTokens(**decoded.get("tokens", {})),
            issued_at=decoded.get("auth_time", decoded["iat"]),
        )


# =============================================================================
# Chunked Cookies
# =============================================================================

def chunk_cookie_name(name: str, index: int) -> str:
    return f"{name}C{index}"


def split_cookie(name: str, value: str, max_size: int = MAX_COOKIE_SIZE) -> List[Tuple[str, str]]:
    """
    Split a cookie value into cookies that each fit ``max_size``.

    Returns:
        ``[(name, value)]`` when it fits, else the base cookie holding the
        chunk count followed by the chunk cookies
    """
    if len(name) + 1 + len(value) <= max_size:
        return [(name, value)]

    # Leave room for the longest chunk suffix
    room = max_size - len(chunk_cookie_name(name, 99)) - 1
    chunks = [value[i:i + room] for i in range(0, len(value), room)]
    cookies = [(name, f"{CHUNK_COUNT_PREFIX}{len(chunks)}")]
    cookies.extend(
        (chunk_cookie_name(name, i), chunk) for i, chunk in enumerate(chunks, start=1)
    )
    return cookies


def _chunk_count(value: Optional[str]) -> int:
    if not value or not value.startswith(CHUNK_COUNT_PREFIX):
        return 0
    try:
        return int(value[len(CHUNK_COUNT_PREFIX):])
    except ValueError:
        return 0


def join_cookie(cookies: Mapping[str, str], name: str) -> Optional[str]:
    """
    Reassemble a cookie written by ``split_cookie``.

    Returns:
        The full value, or None if the cookie or any of its chunks is missing
    """
    value = cookies.get(name)
    count = _chunk_count(value)
    if count == 0:
        return value

    parts = []
    for i in range(1, count + 1):
        chunk = cookies.get(chunk_cookie_name(name, i))
        if not chunk:
            logger.warning("Session cookie chunk missing", extra={"cookie": name, "chunk": i})
            return None
        parts.append(chunk)
    return "".join(parts)


def cookie_names(cookies: Mapping[str, str], name: str) -> List[str]:
    """Names of the base cookie and the chunks it references."""
    count = _chunk_count(cookies.get(name))
    return [name] + [chunk_cookie_name(name, i) for i in range(1, count + 1)]
