"""
auth/oauth.py -- Verification strategies for the external identity provider.

The portal shares users with a separate identity provider. Its tokens are
trusted through three explicit strategies, tried after our own JWTs:

  service-key    -- exact, constant-time match against the provider's
                    configured service key. Grants ADMIN; this is the
                    server-to-server credential.
  external-jwt   -- a JWT signed by the provider with its own HS256 secret.
                    Provider role "service_role" maps to ADMIN, everything
                    else to USER.
  introspection  -- opaque provider tokens are checked with an RFC 7662
                    introspection call (authlib OAuth2Session). Only an
                    "active": true answer is accepted.

Only strategies with their settings present are registered, so an
unconfigured deployment verifies internal JWTs and nothing else.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import hmac
import logging
from datetime import datetime, timezone

import requests
from authlib.common.errors import AuthlibBaseError
from authlib.integrations.requests_client import OAuth2Session
from jose import JWTError, jwt

from auth.models import Role
from auth.tokens import TokenPayload, TokenService, TokenStrategy
from core.config import Settings

logger = logging.getLogger("intranet.auth.oauth")

_PROVIDER_ADMIN_ROLE = "service_role"


def _map_provider_role(value: str | None) -> Role:
    if value == _PROVIDER_ADMIN_ROLE:
        return Role.ADMIN
    try:
        return Role(str(value).upper())
    except ValueError:
        return Role.USER


class ServiceKeyStrategy(TokenStrategy):
    name = "service-key"

    def __init__(self, service_key: str) -> None:
        self._service_key = service_key

    def verify(self, token: str) -> TokenPayload | None:
        if not hmac.compare_digest(token.encode(), self._service_key.encode()):
            return None
        return TokenPayload(user_id="service", identifier="service", role=Role.ADMIN, source=self.name)


class ExternalJwtStrategy(TokenStrategy):
    name = "external-jwt"

    def __init__(self, secret: str, prefix: str = "") -> None:
        self._secret = secret
        self._prefix = prefix

    def verify(self, token: str) -> TokenPayload | None:
        if self._prefix and token.startswith(self._prefix):
            token = token[len(self._prefix) :]
        try:
            # Provider tokens carry an audience we do not pin.
            claims = jwt.decode(token, self._secret, algorithms=["HS256"], options={"verify_aud": False})
        except JWTError:
            return None
        subject = claims.get("sub")
        if not subject:
            return None
        exp = claims.get("exp")
        return TokenPayload(
            user_id=subject,
            identifier=claims.get("email") or claims.get("phone") or subject,
            role=_map_provider_role(claims.get("role")),
            source=self.name,
            expires_at=datetime.fromtimestamp(exp, tz=timezone.utc) if exp else None,
        )


class IntrospectionStrategy(TokenStrategy):
    """Ask the provider whether an opaque token is live.

    The OAuth2Session authenticates with client_secret_basic. Network and
    protocol failures count as "not recognised" -- a provider outage must
    never turn into accepted tokens.
    """

    name = "introspection"

    def __init__(self, url: str, client_id: str, client_secret: str, timeout: float = 5.0) -> None:
        self._url = url
        self._timeout = timeout
        self._session = OAuth2Session(client_id=client_id, client_secret=client_secret)

    def verify(self, token: str) -> TokenPayload | None:
        try:
            resp = self._session.introspect_token(self._url, token=token, timeout=self._timeout)
            resp.raise_for_status()
            data = resp.json()
        except (requests.RequestException, AuthlibBaseError, ValueError) as exc:
            logger.warning("Token introspection failed: %s", exc)
            return None
        if not data.get("active"):
            return None
        exp = data.get("exp")
        if exp and datetime.fromtimestamp(exp, tz=timezone.utc) <= datetime.now(timezone.utc):
            return None
        subject = data.get("sub") or data.get("username")
        if not subject:
            return None
        return TokenPayload(
            user_id=subject,
            identifier=data.get("email") or data.get("username") or subject,
            role=_map_provider_role(data.get("role")),
            source=self.name,
            expires_at=datetime.fromtimestamp(exp, tz=timezone.utc) if exp else None,
        )


def build_external_strategies(settings: Settings) -> list[TokenStrategy]:
    strategies: list[TokenStrategy] = []
    if settings.external_service_key:
        strategies.append(ServiceKeyStrategy(settings.external_service_key))
    if settings.external_jwt_secret:
        strategies.append(ExternalJwtStrategy(settings.external_jwt_secret, settings.external_token_prefix))
    if settings.introspection_url and settings.introspection_client_id:
        strategies.append(
            IntrospectionStrategy(
                settings.introspection_url,
                settings.introspection_client_id,
                settings.introspection_client_secret,
            )
        )
        logger.info("Token introspection enabled (%s)", settings.introspection_url)
    return strategies


def build_token_service(settings: Settings) -> TokenService:
    """Assemble the verifier chain: internal JWT first, then provider strategies."""
    return TokenService(
        settings.secret_key,
        expire_seconds=settings.token_expire_seconds,
        extra_strategies=build_external_strategies(settings),
    )
