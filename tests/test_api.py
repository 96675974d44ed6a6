"""End-to-end tests for the HTTP surface.

Covers:
- Registration, login and the 2FA challenge
- Session listing, deletion and logout
- Service connection and custom domains
- Internal and admin routes
- Billing webhooks and the subscription proxy
- Error envelope and gateway denials
"""

import base64
import json
import time

import pytest
from fastapi.testclient import TestClient

from conftest import DROP_WEBHOOK_SECRET, INTERNAL_SECRET
from nullpass.config import GatewayMode
from nullpass.service.billing import sign_payload
from nullpass.service.totp import TOTPVerifier

PASSWORD = "Sup3rSecret!"
INTERNAL = {"x-internal-secret": INTERNAL_SECRET}


def _register(client, email="user@example.com", password=PASSWORD):
    response = client.post("/v1/auth/register", json={"email": email, "password": password})
    assert response.status_code == 201, response.text
    data = response.json()["data"]
    return data["user"]["id"], data["token"]


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


def _grant(client, user_id, **fields):
    response = client.patch(f"/v1/admin/users/{user_id}", json=fields, headers=INTERNAL)
    assert response.status_code == 200, response.text
    return response.json()["data"]["entitlement"]


class TestRegistrationAndLogin:
    def test_register_returns_user_and_token(self, client):
        response = client.post(
            "/v1/auth/register",
            json={"email": "new@example.com", "password": PASSWORD, "displayName": "New"},
        )
        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "ok"
        assert body["data"]["user"]["displayName"] == "New"
        assert body["data"]["token"]
        assert "passwordHash" not in body["data"]["user"]

    def test_duplicate_registration_conflicts(self, client):
        _register(client)
        response = client.post(
            "/v1/auth/register", json={"email": "user@example.com", "password": PASSWORD}
        )
        assert response.status_code == 409
        assert response.json()["error"] == {
            "code": "conflict",
            "message": "User already exists",
            "details": None,
        }

    def test_short_password_is_a_validation_error(self, client):
        response = client.post(
            "/v1/auth/register", json={"email": "user@example.com", "password": "short"}
        )
        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "validation_error"
        assert error["message"] == "Password must be at least 8 characters"

    def test_login_from_same_client_reuses_session(self, client):
        _, token = _register(client)
        response = client.post(
            "/v1/auth/login", json={"email": "user@example.com", "password": PASSWORD}
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["token"] == token
        assert data["services"] == []

    def test_login_from_new_ip_gets_new_session(self, client):
        _, token = _register(client)
        response = client.post(
            "/v1/auth/login",
            json={"email": "user@example.com", "password": PASSWORD},
            headers={"x-forwarded-for": "203.0.113.50"},
        )
        assert response.json()["data"]["token"] != token
        sessions = client.get("/v1/auth/sessions", headers=_auth(token)).json()["data"]["sessions"]
        assert {s["ip"] for s in sessions} == {"testclient", "203.0.113.50"}

    @pytest.mark.parametrize(
        "email,password",
        [("user@example.com", "WrongPassword1"), ("nobody@example.com", PASSWORD)],
    )
    def test_bad_credentials_are_indistinguishable(self, client, email, password):
        _register(client)
        response = client.post("/v1/auth/login", json={"email": email, "password": password})
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Invalid credentials"

    def test_verify_token(self, client):
        user_id, token = _register(client)
        response = client.post("/v1/auth/verify", json={"token": token})
        assert response.json()["data"]["payload"]["userId"] == user_id
        bad = client.post("/v1/auth/verify", json={"token": token + "x"})
        assert bad.status_code == 401
        assert bad.json()["error"]["message"] == "Invalid token"

    def test_non_ascii_tokens_are_plain_denials(self, client):
        _, token = _register(client)
        header, payload, _ = token.split(".")
        forged = f"{header}.{payload}.\u00e9"
        verify = client.post("/v1/auth/verify", json={"token": forged})
        assert verify.status_code == 401
        assert verify.json()["error"]["message"] == "Invalid token"
        me = client.get("/v1/auth/me", headers={"Authorization": f"Bearer {forged}".encode("utf-8")})
        assert me.status_code == 401
        assert me.json()["error"]["code"] == "unauthorized"


class TestTwoFactor:
    def _enable(self, client, token):
        setup = client.post("/v1/auth/2fa", json={"enable": True}, headers=_auth(token))
        assert setup.status_code == 200
        secret = setup.json()["data"]["secret"]
        assert setup.json()["data"]["otpauthUrl"].startswith("otpauth://totp/")
        qr = setup.json()["data"]["qrCode"]
        assert qr.startswith("data:image/png;base64,")
        assert base64.b64decode(qr.split(",", 1)[1]).startswith(b"\x89PNG")
        code = TOTPVerifier().code_at(secret, time.time())
        confirm = client.post(
            "/v1/auth/2fa",
            json={"enable": True, "verificationCode": code},
            headers=_auth(token),
        )
        assert confirm.status_code == 200
        return secret

    def test_login_requires_code_and_pending_token_is_not_a_session(self, client):
        _, token = _register(client)
        secret = self._enable(client, token)

        pending = client.post(
            "/v1/auth/login", json={"email": "user@example.com", "password": PASSWORD}
        ).json()["data"]
        assert pending["requires2FA"] is True
        assert "token" not in pending
        me = client.get("/v1/auth/me", headers=_auth(pending["pendingToken"]))
        assert me.status_code == 401

        wrong = client.post(
            "/v1/auth/login",
            json={"email": "user@example.com", "password": PASSWORD, "verificationCode": "000000"},
        )
        if TOTPVerifier().verify(secret, "000000"):
            pytest.skip("random secret happened to accept 000000")
        assert wrong.status_code == 401
        assert wrong.json()["error"]["message"] == "Invalid 2FA verification code"

        arabic = client.post(
            "/v1/auth/login",
            json={
                "email": "user@example.com",
                "password": PASSWORD,
                "verificationCode": "\u0661\u0662\u0663\u0664\u0665\u0666",
            },
        )
        assert arabic.status_code == 401
        assert arabic.json()["error"]["message"] == "Invalid 2FA verification code"

        code = TOTPVerifier().code_at(secret, time.time())
        ok = client.post(
            "/v1/auth/login",
            json={"email": "user@example.com", "password": PASSWORD, "verificationCode": code},
        )
        assert ok.status_code == 200
        assert client.get("/v1/auth/me", headers=_auth(ok.json()["data"]["token"])).status_code == 200

    def test_enable_twice_is_rejected(self, client):
        _, token = _register(client)
        self._enable(client, token)
        again = client.post("/v1/auth/2fa", json={"enable": True}, headers=_auth(token))
        assert again.status_code == 400
        assert again.json()["error"]["message"] == "2FA is already enabled"

    def test_disable_requires_code(self, client):
        _, token = _register(client)
        secret = self._enable(client, token)
        missing = client.post("/v1/auth/2fa", json={"enable": False}, headers=_auth(token))
        assert missing.status_code == 400
        code = TOTPVerifier().code_at(secret, time.time())
        ok = client.post(
            "/v1/auth/2fa",
            json={"enable": False, "verificationCode": code},
            headers=_auth(token),
        )
        assert ok.json()["data"]["twoFactorEnabled"] is False


class TestSessionsAndAccount:
    def test_me_without_token_is_unauthorized(self, client):
        response = client.get("/v1/auth/me")
        assert response.status_code == 401
        assert response.json()["error"] == {
            "code": "unauthorized",
            "message": "Unauthorized",
            "details": None,
        }

    def test_logout_revokes_token(self, client):
        _, token = _register(client)
        assert client.post("/v1/auth/logout", headers=_auth(token)).status_code == 200
        assert client.get("/v1/auth/me", headers=_auth(token)).status_code == 401

    def test_delete_unknown_session(self, client):
        _, token = _register(client)
        response = client.delete("/v1/auth/sessions?id=missing", headers=_auth(token))
        assert response.status_code == 404
        assert response.json()["error"]["message"] == "Session not found"

    def test_delete_all_sessions(self, client):
        _, token = _register(client)
        response = client.delete("/v1/auth/sessions", headers=_auth(token))
        assert response.json()["data"]["deleted"] == 1
        assert client.get("/v1/auth/me", headers=_auth(token)).status_code == 401

    def test_change_password(self, client):
        _, token = _register(client)
        wrong = client.post(
            "/v1/auth/password",
            json={"currentPassword": "nope-nope", "newPassword": "Another1Pass"},
            headers=_auth(token),
        )
        assert wrong.status_code == 401
        assert wrong.json()["error"]["message"] == "Invalid current password"
        ok = client.post(
            "/v1/auth/password",
            json={"currentPassword": PASSWORD, "newPassword": "Another1Pass"},
            headers=_auth(token),
        )
        assert ok.status_code == 200
        login = client.post(
            "/v1/auth/login", json={"email": "user@example.com", "password": "Another1Pass"}
        )
        assert login.status_code == 200

    def test_disable_account_blocks_login_and_cancels_billing(self, client, outbound_requests):
        user_id, token = _register(client)
        _grant(client, user_id, service="DROP", tier="pro", isPremium=True)
        client.app.state.runtime.ledger.upsert(user_id, "DROP", {"polar_subscription_id": "sub_9"})

        wrong = client.post(
            "/v1/auth/disable-account", json={"password": "nope-nope"}, headers=_auth(token)
        )
        assert wrong.status_code == 401
        assert wrong.json()["error"]["message"] == "Invalid password"

        ok = client.post(
            "/v1/auth/disable-account", json={"password": PASSWORD}, headers=_auth(token)
        )
        assert ok.status_code == 200
        assert any(
            r.method == "DELETE" and r.url.path.endswith("/subscriptions/sub_9")
            for r in outbound_requests
        )
        login = client.post(
            "/v1/auth/login", json={"email": "user@example.com", "password": PASSWORD}
        )
        assert login.status_code == 401
        assert login.json()["error"]["message"] == "Invalid credentials"

    def test_delete_account(self, client):
        user_id, token = _register(client)
        ok = client.post(
            "/v1/auth/delete-account", json={"password": PASSWORD}, headers=_auth(token)
        )
        assert ok.status_code == 200
        internal = client.get(f"/v1/auth/user/{user_id}", headers=INTERNAL)
        assert internal.status_code == 404

    def test_audit_listing_shows_plain_ips(self, client):
        _, token = _register(client)
        logs = client.get("/v1/audit?action=USER_REGISTER", headers=_auth(token)).json()["data"]
        assert logs["total"] == 1
        assert logs["logs"][0]["data"]["ip"] == "testclient"


class TestServices:
    def test_connect_flow(self, client):
        user_id, token = _register(client)
        missing = client.get("/v1/connect/check", headers=_auth(token))
        assert missing.status_code == 400
        assert missing.json()["error"]["message"] == "Service parameter is required"

        none = client.get("/v1/connect/check?service=mails", headers=_auth(token)).json()["data"]
        assert none == {
            "connected": False,
            "service": "MAILS",
            "message": "No entitlement found for this service",
        }

        not_found = client.post(
            "/v1/connect/disconnect", json={"service": "MAILS"}, headers=_auth(token)
        )
        assert not_found.status_code == 404

        _grant(client, user_id, service="MAILS", tier="pro")
        off = client.post("/v1/connect/disconnect", json={"service": "MAILS"}, headers=_auth(token))
        assert off.json()["data"]["message"] == "Successfully disconnected from service"
        again = client.post(
            "/v1/connect/disconnect", json={"service": "MAILS"}, headers=_auth(token)
        )
        assert again.json()["data"]["message"] == "Already disconnected from this service"
        on = client.post("/v1/connect/connect", json={"service": "MAILS"}, headers=_auth(token))
        assert on.json()["data"]["connected"] is True

    def test_invalid_service_name(self, client):
        _, token = _register(client)
        response = client.get("/v1/connect/check?service=chat", headers=_auth(token))
        assert response.status_code == 400
        assert response.json()["error"]["message"] == (
            "Invalid service. Must be DROP, MAILS, VAULT, DB, or BOARD"
        )

    def test_self_service_tier_change(self, client):
        _, token = _register(client)
        response = client.post(
            "/v1/services", json={"service": "board", "tier": "team"}, headers=_auth(token)
        )
        assert response.json()["data"]["entitlement"]["tier"] == "team"
        listed = client.get("/v1/services?service=BOARD", headers=_auth(token)).json()["data"]
        assert [s["service"] for s in listed["services"]] == ["BOARD"]

    def test_custom_domain_requires_enterprise(self, client):
        user_id, token = _register(client)
        denied = client.get("/v1/user/custom-domain", headers=_auth(token))
        assert denied.status_code == 403
        assert denied.json()["error"]["message"] == "Enterprise plan required for custom domains"

        _grant(client, user_id, service="DROP", tier="enterprise")
        claimed = client.post(
            "/v1/user/custom-domain", json={"domain": "files.example.com"}, headers=_auth(token)
        )
        assert claimed.json()["data"]["domain"] == "files.example.com"
        info = client.get("/v1/user/custom-domain", headers=_auth(token)).json()["data"]
        assert info["hasCustomDomain"] is True
        released = client.delete("/v1/user/custom-domain", headers=_auth(token))
        assert released.json()["data"]["success"] is True


class TestInternalAndAdmin:
    def test_internal_user_requires_secret(self, client):
        user_id, _ = _register(client)
        assert client.get(f"/v1/auth/user/{user_id}").status_code == 401
        wrong = client.get(f"/v1/auth/user/{user_id}", headers={"x-internal-secret": "guess"})
        assert wrong.status_code == 401
        ok = client.get(f"/v1/auth/user/{user_id}", headers=INTERNAL)
        assert ok.json()["data"]["user"]["id"] == user_id

    def test_non_admin_is_forbidden(self, client):
        _, token = _register(client)
        response = client.get("/v1/admin/users", headers=_auth(token))
        assert response.status_code == 403
        assert response.json()["error"]["message"] == "Forbidden - Admin access required"

    def test_team_founder_can_administer(self, client):
        admin_id, admin_token = _register(client, "admin@example.com")
        member_id, _ = _register(client, "member@example.com")
        _grant(
            client,
            admin_id,
            service="DROP",
            accessFlags={"isNullDropTeam": True, "nullDropTeamRole": "founder"},
        )

        listing = client.get("/v1/admin/users?limit=10", headers=_auth(admin_token)).json()["data"]
        assert listing["pagination"]["totalCount"] == 2

        patched = client.patch(
            f"/v1/admin/users/{member_id}",
            json={"service": "DROP", "tier": "pro", "isPremium": True},
            headers=_auth(admin_token),
        )
        assert patched.json()["data"]["entitlement"]["isPremium"] is True
        stats = client.get("/v1/admin/users/stats", headers=_auth(admin_token)).json()["data"]
        assert stats == {"totalUsers": 2, "premiumUsers": 1, "freeUsers": 1}

        audit = client.get("/v1/audit?action=SERVICE_ACCESS_GRANT", headers=_auth(admin_token))
        assert audit.json()["data"]["total"] == 1

    def test_null_tier_is_rejected(self, client):
        user_id, _ = _register(client)
        _grant(client, user_id, service="DROP", tier="pro", isPremium=True)
        response = client.patch(
            f"/v1/admin/users/{user_id}",
            json={"service": "DROP", "tier": None, "isPremium": None},
            headers=INTERNAL,
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"
        ent = client.app.state.runtime.ledger.get(user_id, "DROP")
        assert (ent.tier, ent.is_premium) == ("pro", True)

    def test_patch_unknown_user(self, client):
        response = client.patch(
            "/v1/admin/users/missing", json={"service": "DROP", "tier": "pro"}, headers=INTERNAL
        )
        assert response.status_code == 404
        assert response.json()["error"]["message"] == "User not found"

    def test_migrate(self, client):
        record = {"email": "legacy@example.com", "password": "LegacyPass1", "isPremiumDrop": True}
        assert client.post("/v1/migrate", json=record).status_code == 401
        first = client.post("/v1/migrate", json=record, headers=INTERNAL)
        assert first.status_code == 201
        second = client.post("/v1/migrate", json=record, headers=INTERNAL)
        assert second.status_code == 409
        assert second.json()["error"]["message"] == "User already migrated"
        login = client.post(
            "/v1/auth/login", json={"email": "legacy@example.com", "password": "LegacyPass1"}
        )
        assert login.json()["data"]["services"][0]["isPremium"] is True


class TestBillingRoutes:
    def _post_webhook(self, client, payload, secret=DROP_WEBHOOK_SECRET):
        body = json.dumps(payload).encode()
        timestamp = int(time.time())
        headers = {
            "content-type": "application/json",
            "webhook-id": "msg_test",
            "webhook-timestamp": str(timestamp),
            "webhook-signature": sign_payload(secret, "msg_test", timestamp, body),
        }
        return client.post("/v1/webhooks/drop", content=body, headers=headers)

    def test_subscription_webhook_then_proxy(self, client):
        user_id, token = _register(client)
        assert client.get("/v1/subscription", headers=_auth(token)).status_code == 404

        response = self._post_webhook(
            client,
            {
                "type": "subscription.created",
                "data": {
                    "id": "sub_1",
                    "status": "active",
                    "metadata": {"userId": user_id, "plan": "pro"},
                },
            },
        )
        assert response.status_code == 200
        assert response.json()["data"] == {"received": True}

        summary = client.get("/v1/subscription", headers=_auth(token)).json()["data"]
        assert summary["id"] == "sub_1"
        assert summary["plan"] == "pro"

    def test_bad_signature_is_forbidden(self, client):
        response = self._post_webhook(client, {"type": "x", "data": {}}, secret="wrong")
        assert response.status_code == 403
        assert response.json()["error"]["message"] == "Invalid webhook signature"

    def test_unbilled_service_has_no_webhook(self, client):
        assert client.post("/v1/webhooks/board", content=b"{}").status_code == 404


class TestPlatform:
    def test_healthz(self, client):
        body = client.get("/healthz").json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["type"] == "memory"
        assert body["checks"]["redis"] == {"status": "not_configured"}

    def test_request_id_is_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "trace-123"})
        assert response.headers["X-Request-ID"] == "trace-123"
        assert response.headers["X-Content-Type-Options"] == "nosniff"

    def test_live_gateway_blocks_curl(self, settings, http_client):
        from nullpass.app import create_app

        live = settings.model_copy(update={"gateway_mode": GatewayMode.LIVE})
        with TestClient(create_app(live, http_client=http_client)) as client:
            response = client.get("/v1/auth/me", headers={"User-Agent": "curl/8.4.0"})
        assert response.status_code == 403
        assert response.json()["error"] == {
            "code": "forbidden",
            "message": "Request blocked by filter rules",
            "details": None,
        }
