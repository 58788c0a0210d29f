import base64
import json
from datetime import timedelta

from warden.service.access_tokens import AccessTokenIssuer


def _b64(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


def test_issue_and_decode_roundtrip(settings, clock):
    issuer = AccessTokenIssuer(settings, clock)
    issued = issuer.issue("user-1", ["user", "admin"])
    payload = issuer.decode(issued.token)
    assert payload["sub"] == "user-1"
    assert payload["roles"] == ["user", "admin"]
    assert payload["jti"] == issued.jti
    assert issued.expires_at == clock.now() + timedelta(minutes=settings.access_token_ttl_minutes)


def test_claims_carry_no_email(settings, clock):
    issuer = AccessTokenIssuer(settings, clock)
    payload = issuer.decode(issuer.issue("user-1", ["user"]).token)
    assert set(payload) == {"iss", "aud", "sub", "jti", "iat", "exp", "roles", "token_type"}


def test_expired_token_is_rejected_after_skew(settings, clock):
    issuer = AccessTokenIssuer(settings, clock)
    token = issuer.issue("user-1", ["user"]).token
    clock.advance(minutes=settings.access_token_ttl_minutes)
    assert issuer.decode(token) is not None
    clock.advance(seconds=settings.clock_skew_seconds + 1)
    assert issuer.decode(token) is None


def test_tampered_payload_is_rejected(settings, clock):
    issuer = AccessTokenIssuer(settings, clock)
    header, payload, signature = issuer.issue("user-1", ["user"]).token.split(".")
    claims = json.loads(base64.urlsafe_b64decode(payload + "=" * (-len(payload) % 4)))
    claims["roles"] = ["admin"]
    assert issuer.decode(f"{header}.{_b64(claims)}.{signature}") is None


def test_alg_none_is_rejected(settings, clock):
    issuer = AccessTokenIssuer(settings, clock)
    _, payload, _ = issuer.issue("user-1", ["user"]).token.split(".")
    assert issuer.decode(f"{_b64({'alg': 'none', 'typ': 'JWT'})}.{payload}.") is None


def test_other_secret_is_rejected(settings, clock):
    token = AccessTokenIssuer(settings, clock).issue("user-1", ["user"]).token
    other = settings.model_copy(update={"jwt_secret": "another-secret-that-is-long-enough-1234"})
    assert AccessTokenIssuer(other, clock).decode(token) is None


def test_wrong_audience_is_rejected(settings, clock):
    token = AccessTokenIssuer(settings, clock).issue("user-1", ["user"]).token
    other = settings.model_copy(update={"jwt_audience": "somebody-else"})
    assert AccessTokenIssuer(other, clock).decode(token) is None


def test_malformed_tokens(settings, clock):
    issuer = AccessTokenIssuer(settings, clock)
    assert issuer.decode("") is None
    assert issuer.decode("a.b") is None
    assert issuer.decode("!!!.???.***") is None
    head, payload, _ = issuer.issue("user-1", ["user"]).token.split(".")
    assert issuer.decode(f"{head}.{payload}.sigé") is None
