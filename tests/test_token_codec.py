"""Tests for bearer token issue/verify and TTL parsing."""

import base64
import json

from nullpass.service.tokens import DEFAULT_TTL_SECONDS, TokenCodec, parse_duration


def _tamper_payload(token: str, **changes) -> str:
    header, payload, sig = token.split(".")
    padded = payload + "=" * ((4 - len(payload) % 4) % 4)
    data = json.loads(base64.urlsafe_b64decode(padded))
    data.update(changes)
    forged = base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")
    return f"{header}.{forged}.{sig}"


class TestParseDuration:
    def test_units(self):
        assert parse_duration("30s") == 30
        assert parse_duration("15m") == 900
        assert parse_duration("12h") == 12 * 3600
        assert parse_duration("7d") == 7 * 86400

    def test_unrecognised_values_fall_back_to_seven_days(self):
        for value in (None, "", "7w", "abc", "0d", "-1h", "1.5h"):
            assert parse_duration(value) == DEFAULT_TTL_SECONDS


class TestTokenCodec:
    def test_issue_then_verify_returns_claims(self, codec):
        token = codec.issue("user-1", "a@example.com", now=1_000_000)
        payload = codec.verify(token, now=1_000_001)
        assert payload is not None
        assert payload.user_id == "user-1"
        assert payload.email == "a@example.com"
        assert payload.expires_at - payload.issued_at == 7 * 86400

    def test_tokens_issued_in_same_second_differ(self, codec):
        first = codec.issue("user-1", "a@example.com", now=1_000_000)
        second = codec.issue("user-1", "a@example.com", now=1_000_000)
        assert first != second

    def test_expired_token_is_rejected(self):
        codec = TokenCodec("secret", "10s")
        token = codec.issue("user-1", "a@example.com", now=1_000_000)
        assert codec.verify(token, now=1_000_009) is not None
        assert codec.verify(token, now=1_000_010) is None

    def test_wrong_secret_is_rejected(self, codec):
        token = codec.issue("user-1", "a@example.com")
        assert TokenCodec("another-secret").verify(token) is None

    def test_tampered_payload_is_rejected(self, codec):
        token = codec.issue("user-1", "a@example.com")
        assert codec.verify(_tamper_payload(token, userId="user-2")) is None

    def test_malformed_tokens_never_raise(self, codec):
        for garbage in (None, "", "abc", "a.b", "a.b.c", "...", "x" * 500):
            assert codec.verify(garbage) is None

    def test_alg_none_is_rejected(self, codec):
        token = codec.issue("user-1", "a@example.com")
        _, payload, _ = token.split(".")
        header = base64.urlsafe_b64encode(b'{"alg":"none","typ":"JWT"}').decode().rstrip("=")
        assert codec.verify(f"{header}.{payload}.") is None

    def test_payload_dict_uses_wire_names(self, codec):
        payload = codec.verify(codec.issue("user-1", "a@example.com"))
        assert set(payload.as_dict()) == {"userId", "email", "iat", "exp"}

    def test_non_ascii_segments_are_rejected(self, codec):
        header, payload, _ = codec.issue("user-1", "a@example.com").split(".")
        for token in (
            f"{header}.{payload}.\u00e9",
            f"{header}.{payload}.\u0661\u0662\u0663",
            f"\u00e9{header}.{payload}.x",
        ):
            assert codec.verify(token) is None
