"""Tests for capstan/credentials.py -- JWT validation and trust anchors."""

import time

import jwt
import pytest

from capstan.credentials import CredentialValidator, IssuerKey, TokenIssuer, TrustAnchor
from capstan.errors import AuthenticationError, ConfigError, ExpiredCredential, InvalidCredential, UntrustedIssuer
from capstan.rbac import Role

from conftest import SECRET


class TestValidate:
    def test_valid_token(self, issuer, validator):
        identity = validator.validate(issuer.issue("agent-7", Role.OPERATOR))
        assert identity.id == "agent-7"
        assert identity.role is Role.OPERATOR
        assert identity.issuer == "capstan"
        assert identity.expires_at > identity.issued_at
        assert not identity.is_expired

    def test_bearer_prefix_stripped(self, issuer, validator):
        token = issuer.issue("agent-7")
        assert validator.validate(f"Bearer {token}").id == "agent-7"
        assert validator.validate(f"bearer   {token}").id == "agent-7"

    def test_empty(self, validator):
        with pytest.raises(InvalidCredential):
            validator.validate("")

    def test_malformed(self, validator):
        with pytest.raises(InvalidCredential):
            validator.validate("not-a-jwt")

    def test_expired(self, issuer, validator):
        with pytest.raises(ExpiredCredential):
            validator.validate(issuer.issue("agent-7", ttl_seconds=-30))

    def test_untrusted_issuer(self, validator):
        token = TokenIssuer(secret=SECRET, issuer="someone-else").issue("agent-7")
        with pytest.raises(UntrustedIssuer):
            validator.validate(token)

    def test_bad_signature(self, validator):
        token = TokenIssuer(secret="x" * 40, issuer="capstan").issue("agent-7")
        with pytest.raises(InvalidCredential):
            validator.validate(token)

    def test_unknown_role(self, validator):
        now = int(time.time())
        token = jwt.encode(
            {"sub": "a", "iss": "capstan", "role": "root", "iat": now, "exp": now + 60},
            SECRET,
            algorithm="HS256",
        )
        with pytest.raises(InvalidCredential):
            validator.validate(token)

    def test_missing_sub(self, validator):
        now = int(time.time())
        token = jwt.encode({"iss": "capstan", "role": "viewer", "iat": now, "exp": now + 60}, SECRET)
        with pytest.raises(InvalidCredential):
            validator.validate(token)

    def test_all_failures_share_public_kind(self, issuer, validator):
        kinds = set()
        for bad in ("", "junk", issuer.issue("a", ttl_seconds=-30), TokenIssuer(SECRET, "evil").issue("a")):
            with pytest.raises(AuthenticationError) as exc_info:
                validator.validate(bad)
            kinds.add(exc_info.value.public_kind)
        assert kinds == {"AuthenticationFailed"}


class TestAudience:
    def test_audience_required_when_configured(self):
        issuer = TokenIssuer(secret=SECRET, issuer="capstan", audience="capstan-gw")
        validator = CredentialValidator(issuer.anchor())
        assert validator.validate(issuer.issue("a")).id == "a"

        no_aud = TokenIssuer(secret=SECRET, issuer="capstan").issue("a")
        with pytest.raises(InvalidCredential):
            validator.validate(no_aud)


class TestTrustAnchor:
    def test_reload_is_atomic_swap(self, issuer, validator):
        token = issuer.issue("agent-7")
        old = validator.anchor
        validator.reload(TrustAnchor(issuers={"other": IssuerKey("other", key="k" * 32)}))
        assert old.issuers["capstan"].key == SECRET
        with pytest.raises(UntrustedIssuer):
            validator.validate(token)

    def test_from_config_secret_env(self, monkeypatch):
        monkeypatch.setenv("MY_SECRET", SECRET)
        anchor = TrustAnchor.from_config(
            {"issuers": [{"issuer": "idp", "secret_env": "MY_SECRET"}], "audience": "gw", "leeway_s": 5}
        )
        assert anchor.issuers["idp"].key == SECRET
        assert anchor.audience == "gw"
        assert anchor.leeway == 5.0
        assert not anchor.requires_fetch

    def test_from_config_env_fallback(self, monkeypatch):
        monkeypatch.setenv("CAPSTAN_JWT_SECRET", SECRET)
        anchor = TrustAnchor.from_config({})
        assert list(anchor.issuers) == ["capstan"]

    def test_from_config_no_issuers(self):
        assert TrustAnchor.from_config(None).issuers == {}

    def test_missing_key_material(self, monkeypatch):
        monkeypatch.delenv("UNSET_SECRET", raising=False)
        with pytest.raises(ConfigError):
            TrustAnchor.from_config({"issuers": [{"issuer": "idp", "secret_env": "UNSET_SECRET"}]})

    def test_public_key_file_missing(self, tmp_path):
        with pytest.raises(ConfigError):
            TrustAnchor.from_config(
                {"issuers": [{"issuer": "idp", "algorithm": "RS256", "public_key_file": str(tmp_path / "nope.pem")}]}
            )

    def test_jwks_requires_fetch(self):
        anchor = TrustAnchor.from_config({"issuers": [{"issuer": "idp", "jwks_url": "https://idp/jwks.json"}]})
        assert anchor.requires_fetch
        assert CredentialValidator(anchor).requires_fetch


class TestTokenIssuer:
    def test_no_secret(self):
        with pytest.raises(ConfigError):
            TokenIssuer(secret="").issue("a")

    def test_env_defaults(self, monkeypatch):
        monkeypatch.setenv("CAPSTAN_JWT_SECRET", SECRET)
        monkeypatch.setenv("CAPSTAN_JWT_ISSUER", "ops")
        issuer = TokenIssuer()
        claims = jwt.decode(issuer.issue("a", "admin"), SECRET, algorithms=["HS256"])
        assert claims["iss"] == "ops"
        assert claims["role"] == "admin"

    def test_anchor_rejects_asymmetric(self):
        with pytest.raises(ConfigError):
            TokenIssuer(secret=SECRET, algorithm="RS256").anchor()
