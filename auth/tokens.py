"""
auth/tokens.py -- JWT issuance and verification, password hashing, code digests.

Security design decisions:
  JWT: python-jose with HS256. Tokens are signed with SECRET_KEY and carry
       user_id, sub (email or phone), role, iat and exp. Default lifetime is
       24 hours.

  Verification is an ordered list of named strategies (TokenStrategy). The
       first strategy that recognises a token wins; every strategy returns a
       TokenPayload or None and never raises. The internal strategy lives
       here; strategies for the external identity provider live in
       auth/oauth.py. A token no strategy recognises is rejected; there is no
       length-based fallback.

  Passwords: bcrypt directly (no passlib wrapper). _DUMMY_HASH enables
       timing equalization so response time does not reveal whether an
       account exists.

  One-time codes: the user row stores HMAC-SHA256(SECRET_KEY, code), never
       the raw code. The code registry holds the live value.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import JWTError, jwt

from auth.models import Role

if TYPE_CHECKING:
    from auth.models import User

logger = logging.getLogger("intranet.auth.tokens")

ALGORITHM = "HS256"

# bcrypt refuses longer inputs (4.x truncated them silently).
BCRYPT_MAX_BYTES = 72

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Callers must reject passwords longer than BCRYPT_MAX_BYTES when UTF-8
    encoded; bcrypt raises ValueError for them.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed hash in the database -- treat as a mismatch.
        return False


# Computed once at module load so the first failed lookup is not measurably
# slower than later ones.
_DUMMY_HASH: str = hash_password("intranet_timing_dummy")


def burn_password_check(plain: str) -> None:
    """Run a bcrypt comparison whose result is ignored (timing equalization)."""
    verify_password(plain, _DUMMY_HASH)


def hash_code(code: str, secret_key: str) -> str:
    """Return HMAC-SHA256(secret_key, code) as hex."""
    return hmac.new(secret_key.encode(), code.encode(), hashlib.sha256).hexdigest()


# ---------------------------------------------------------------------------
# Verification strategies
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TokenPayload:
    """What any verified token resolves to, whoever issued it."""

    user_id: int | str
    identifier: str
    role: Role
    source: str
    expires_at: datetime | None = None


class TokenStrategy:
    """A named way of recognising a bearer token.

    Subclasses implement verify() and return None for anything they do not
    recognise or cannot validate. They must not raise.
    """

    name = "base"

    def verify(self, token: str) -> TokenPayload | None:
        raise NotImplementedError


class InternalJwtStrategy(TokenStrategy):
    """Tokens this service issued: HS256 with our own SECRET_KEY."""

    name = "internal-jwt"

    def __init__(self, secret_key: str) -> None:
        self._secret_key = secret_key

    def verify(self, token: str) -> TokenPayload | None:
        try:
            payload = jwt.decode(token, self._secret_key, algorithms=[ALGORITHM])
        except JWTError:
            return None
        if "user_id" not in payload or "role" not in payload:
            return None
        try:
            role = Role(payload["role"])
        except ValueError:
            return None
        exp = payload.get("exp")
        return TokenPayload(
            user_id=payload["user_id"],
            identifier=payload.get("sub", ""),
            role=role,
            source=self.name,
            expires_at=datetime.fromtimestamp(exp, tz=timezone.utc) if exp else None,
        )


# ---------------------------------------------------------------------------
# Token service
# ---------------------------------------------------------------------------


class TokenService:
    """Issues portal session tokens and verifies any accepted token shape.

    Usage:
        service = TokenService(settings.secret_key, extra_strategies=[...])
        token = service.issue(user)
        payload = service.verify(token)   # TokenPayload or None
    """

    def __init__(
        self,
        secret_key: str,
        expire_seconds: int = 86400,
        extra_strategies: list[TokenStrategy] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._secret_key = secret_key
        self.expire_seconds = expire_seconds
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.strategies: list[TokenStrategy] = [InternalJwtStrategy(secret_key), *(extra_strategies or [])]

    def issue(self, user: User, expire_seconds: int = 0) -> str:
        """Encode a signed JWT for user.

        expire_seconds of 0 (default) uses the service-wide lifetime.
        """
        duration = expire_seconds if expire_seconds > 0 else self.expire_seconds
        now = self._clock()
        payload = {
            "sub": user.identifier,
            "user_id": user.id,
            "role": Role(user.role).value,
            "iat": now,
            "exp": now + timedelta(seconds=duration),
        }
        return jwt.encode(payload, self._secret_key, algorithm=ALGORITHM)

    def verify(self, token: str | None) -> TokenPayload | None:
        """Return the payload from the first strategy that accepts token, else None."""
        if not token:
            return None
        for strategy in self.strategies:
            try:
                payload = strategy.verify(token)
            except Exception:
                logger.exception("Token strategy %s raised; treating token as unrecognised", strategy.name)
                continue
            if payload is not None:
                return payload
        return None


def extract_token_from_header(header_value: str | None, provider_prefix: str = "") -> str | None:
    """Pull a bearer token out of an Authorization header value.

    Accepts "Bearer <token>", a bare three-part JWT, or a token starting with
    the external provider's prefix. Anything else is None.
    """
    if not header_value:
        return None
    value = header_value.strip()
    if value.startswith("Bearer "):
        token = value[7:].strip()
        return token or None
    if value.count(".") == 2 and all(value.split(".")):
        return value
    if provider_prefix and value.startswith(provider_prefix) and len(value) > len(provider_prefix):
        return value
    return None
