"""Unit tests for auth/tokens.py and auth/oauth.py -- issuing and verifying tokens.

Covers:
- Internal JWT round trip keeps user id and role; expired / tampered tokens fail
- Authorization header parsing (Bearer, bare JWT, provider prefix)
- External strategies: service key, provider JWT, RFC 7662 introspection
- No fallback acceptance of unrecognised long strings
- A strategy that raises is skipped, not fatal
- Password hashing helpers
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import requests
from jose import jwt

from auth.models import Role, User
from auth.oauth import (
    ExternalJwtStrategy,
    IntrospectionStrategy,
    ServiceKeyStrategy,
    build_external_strategies,
    build_token_service,
)
from auth.tokens import (
    TokenService,
    TokenStrategy,
    extract_token_from_header,
    hash_code,
    hash_password,
    verify_password,
)
from conftest import TEST_SECRET, make_settings

PROVIDER_SECRET = "provider-secret-abcdefghijklmnopqrstuvwxyz"


def _user(**kwargs) -> User:
    values = {"id": 7, "email": "ana@corp.com", "role": Role.MANAGER}
    values.update(kwargs)
    return User(**values)


# ---------------------------------------------------------------------------
# Internal JWT
# ---------------------------------------------------------------------------


class TestInternalTokens:
    def test_round_trip_preserves_identity(self):
        service = TokenService(TEST_SECRET)
        payload = service.verify(service.issue(_user()))
        assert payload is not None
        assert payload.user_id == 7
        assert payload.role is Role.MANAGER
        assert payload.identifier == "ana@corp.com"
        assert payload.source == "internal-jwt"

    def test_phone_only_user_identifier_is_phone(self):
        service = TokenService(TEST_SECRET)
        payload = service.verify(service.issue(_user(email=None, phone="+5511988887777")))
        assert payload.identifier == "+5511988887777"

    def test_expired_token_rejected(self):
        two_days_ago = datetime.now(timezone.utc) - timedelta(days=2)
        service = TokenService(TEST_SECRET, expire_seconds=3600, clock=lambda: two_days_ago)
        token = service.issue(_user())
        assert TokenService(TEST_SECRET).verify(token) is None

    def test_expiry_uses_configured_lifetime(self):
        service = TokenService(TEST_SECRET, expire_seconds=600)
        payload = service.verify(service.issue(_user()))
        remaining = payload.expires_at - datetime.now(timezone.utc)
        assert timedelta(minutes=8) < remaining <= timedelta(minutes=10)

    def test_wrong_secret_rejected(self):
        token = TokenService("another-secret-0123456789abcdef0123").issue(_user())
        assert TokenService(TEST_SECRET).verify(token) is None

    def test_tampered_token_rejected(self):
        token = TokenService(TEST_SECRET).issue(_user())
        header, body, signature = token.split(".")
        tampered = f"{header}.{body}.{signature[:-2]}xx"
        assert TokenService(TEST_SECRET).verify(tampered) is None

    def test_token_without_role_rejected(self):
        token = jwt.encode({"sub": "x", "user_id": 1}, TEST_SECRET, algorithm="HS256")
        assert TokenService(TEST_SECRET).verify(token) is None

    def test_empty_and_opaque_tokens_rejected(self):
        service = TokenService(TEST_SECRET)
        assert service.verify(None) is None
        assert service.verify("") is None
        # Long opaque strings are not trusted just for being long.
        assert service.verify("x" * 300) is None


class TestExtractTokenFromHeader:
    def test_bearer(self):
        assert extract_token_from_header("Bearer abc.def.ghi") == "abc.def.ghi"

    def test_bearer_without_value(self):
        assert extract_token_from_header("Bearer   ") is None

    def test_bare_jwt(self):
        assert extract_token_from_header("abc.def.ghi") == "abc.def.ghi"

    def test_provider_prefix(self):
        assert extract_token_from_header("sbp_123456", provider_prefix="sbp_") == "sbp_123456"

    def test_rejects_other_values(self):
        assert extract_token_from_header(None) is None
        assert extract_token_from_header("Basic dXNlcjpwYXNz") is None
        assert extract_token_from_header("sbp_123456") is None
        assert extract_token_from_header("abc..ghi") is None


# ---------------------------------------------------------------------------
# External identity provider strategies
# ---------------------------------------------------------------------------


class TestServiceKey:
    def test_exact_key_is_admin(self):
        service = TokenService(TEST_SECRET, extra_strategies=[ServiceKeyStrategy("svc-key-123")])
        payload = service.verify("svc-key-123")
        assert payload.role is Role.ADMIN
        assert payload.source == "service-key"

    def test_other_key_rejected(self):
        service = TokenService(TEST_SECRET, extra_strategies=[ServiceKeyStrategy("svc-key-123")])
        assert service.verify("svc-key-124") is None


class TestExternalJwt:
    def _provider_token(self, **claims) -> str:
        values = {
            "sub": "provider-user-1",
            "email": "bob@corp.com",
            "role": "authenticated",
            "aud": "authenticated",
            "exp": datetime.now(timezone.utc) + timedelta(hours=1),
        }
        values.update(claims)
        return jwt.encode(values, PROVIDER_SECRET, algorithm="HS256")

    def test_provider_user_maps_to_user_role(self):
        service = TokenService(TEST_SECRET, extra_strategies=[ExternalJwtStrategy(PROVIDER_SECRET)])
        payload = service.verify(self._provider_token())
        assert payload.source == "external-jwt"
        assert payload.user_id == "provider-user-1"
        assert payload.identifier == "bob@corp.com"
        assert payload.role is Role.USER

    def test_service_role_maps_to_admin(self):
        service = TokenService(TEST_SECRET, extra_strategies=[ExternalJwtStrategy(PROVIDER_SECRET)])
        payload = service.verify(self._provider_token(role="service_role"))
        assert payload.role is Role.ADMIN

    def test_prefix_is_stripped(self):
        strategy = ExternalJwtStrategy(PROVIDER_SECRET, prefix="ext_")
        service = TokenService(TEST_SECRET, extra_strategies=[strategy])
        payload = service.verify("ext_" + self._provider_token())
        assert payload is not None
        assert payload.user_id == "provider-user-1"

    def test_expired_provider_token_rejected(self):
        service = TokenService(TEST_SECRET, extra_strategies=[ExternalJwtStrategy(PROVIDER_SECRET)])
        token = self._provider_token(exp=datetime.now(timezone.utc) - timedelta(minutes=1))
        assert service.verify(token) is None

    def test_internal_token_still_wins(self):
        service = TokenService(TEST_SECRET, extra_strategies=[ExternalJwtStrategy(PROVIDER_SECRET)])
        payload = service.verify(service.issue(_user()))
        assert payload.source == "internal-jwt"


class TestIntrospection:
    def _strategy(self, session: MagicMock) -> IntrospectionStrategy:
        with patch("auth.oauth.OAuth2Session", return_value=session):
            return IntrospectionStrategy("https://idp.corp/introspect", "portal", "s3cret")

    def _session(self, body: dict) -> MagicMock:
        session = MagicMock()
        session.introspect_token.return_value.json.return_value = body
        return session

    def test_active_token_accepted(self):
        session = self._session({"active": True, "sub": "u-9", "username": "carol", "role": "MANAGER"})
        payload = self._strategy(session).verify("opaque-token")
        assert payload.user_id == "u-9"
        assert payload.identifier == "carol"
        assert payload.role is Role.MANAGER
        assert payload.source == "introspection"
        session.introspect_token.assert_called_once_with(
            "https://idp.corp/introspect", token="opaque-token", timeout=5.0
        )

    def test_inactive_token_rejected(self):
        session = self._session({"active": False})
        assert self._strategy(session).verify("opaque-token") is None

    def test_network_failure_rejects(self):
        session = MagicMock()
        session.introspect_token.side_effect = requests.ConnectionError("idp down")
        assert self._strategy(session).verify("opaque-token") is None

    def test_unknown_role_defaults_to_user(self):
        session = self._session({"active": True, "sub": "u-9", "role": "wizard"})
        assert self._strategy(session).verify("opaque-token").role is Role.USER


class TestStrategyChain:
    def test_raising_strategy_is_skipped(self):
        class Broken(TokenStrategy):
            name = "broken"

            def verify(self, token):
                raise RuntimeError("boom")

        service = TokenService(TEST_SECRET, extra_strategies=[Broken(), ServiceKeyStrategy("svc-key-123")])
        assert service.verify("svc-key-123").source == "service-key"

    def test_only_configured_strategies_registered(self):
        assert build_external_strategies(make_settings()) == []
        settings = make_settings(external_service_key="svc-key-123", external_jwt_secret=PROVIDER_SECRET)
        names = [s.name for s in build_token_service(settings).strategies]
        assert names == ["internal-jwt", "service-key", "external-jwt"]


# ---------------------------------------------------------------------------
# Hashing helpers
# ---------------------------------------------------------------------------


def test_password_hash_round_trip():
    hashed = hash_password("correct horse")
    assert hashed != "correct horse"
    assert verify_password("correct horse", hashed) is True
    assert verify_password("wrong horse", hashed) is False


def test_malformed_hash_is_a_mismatch():
    assert verify_password("anything", "not-a-bcrypt-hash") is False


def test_hash_code_depends_on_secret():
    assert hash_code("482913", TEST_SECRET) == hash_code("482913", TEST_SECRET)
    assert hash_code("482913", TEST_SECRET) != hash_code("482913", "other-secret")
