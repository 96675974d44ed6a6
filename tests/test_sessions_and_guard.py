"""Tests for session reconciliation and bearer authorization."""

from datetime import datetime, timedelta, timezone

from nullpass.service.audit import AuditAction
from nullpass.service.guard import AuthorizationGuard, DenyReason, extract_bearer
from nullpass.service.tokens import TokenCodec


class TestSessionReconciler:
    def test_first_login_creates_session(self, reconciler, store, user):
        result = reconciler.reconcile(user, "10.0.0.1")
        assert result.created and not result.rotated
        assert store.get_session_by_token(result.token).id == result.session.id

    def test_repeat_login_from_same_ip_reuses_token(self, reconciler, store, user):
        first = reconciler.reconcile(user, "10.0.0.1")
        second = reconciler.reconcile(user, "10.0.0.1")
        assert second.token == first.token
        assert second.session.id == first.session.id
        assert not second.created
        assert second.session.expires_at >= first.session.expires_at
        assert len(store.list_sessions(user.id)) == 1

    def test_logins_from_different_ips_get_distinct_sessions(self, reconciler, store, user):
        first = reconciler.reconcile(user, "10.0.0.1")
        second = reconciler.reconcile(user, "10.0.0.2")
        assert first.token != second.token
        assert len(store.list_sessions(user.id)) == 2

    def test_stale_token_is_rotated_in_place(self, store, audit, user):
        from nullpass.service.sessions import SessionReconciler

        old_codec = TokenCodec("rotated-away-secret")
        new_codec = TokenCodec("current-secret")
        SessionReconciler(store, old_codec, audit).reconcile(user, "10.0.0.1")
        result = SessionReconciler(store, new_codec, audit).reconcile(user, "10.0.0.1")
        assert result.rotated
        assert new_codec.verify(result.token).user_id == user.id
        assert len(store.list_sessions(user.id)) == 1

    def test_expired_session_is_not_reused(self, reconciler, store, user):
        first = reconciler.reconcile(user, "10.0.0.1")
        store.update_session(
            first.session.id, expires_at=datetime.now(timezone.utc) - timedelta(seconds=1)
        )
        second = reconciler.reconcile(user, "10.0.0.1")
        assert second.created
        assert second.session.id != first.session.id

    def test_login_and_session_create_are_audited(self, reconciler, store, user):
        reconciler.reconcile(user, "10.0.0.1", audit_data={"twoFactorUsed": False})
        actions = [entry.action for entry in store.list_audit(user.id)[0]]
        assert AuditAction.USER_LOGIN.value in actions
        assert AuditAction.SESSION_CREATE.value in actions


class TestExtractBearer:
    def test_scheme_is_case_insensitive(self):
        assert extract_bearer("Bearer abc") == "abc"
        assert extract_bearer("bearer abc") == "abc"

    def test_missing_or_other_schemes(self):
        assert extract_bearer(None) is None
        assert extract_bearer("") is None
        assert extract_bearer("Basic abc") is None
        assert extract_bearer("Bearer   ") is None


class TestAuthorizationGuard:
    def test_live_session_is_allowed(self, store, codec, reconciler, user):
        result = reconciler.reconcile(user, "10.0.0.1")
        decision = AuthorizationGuard(store, codec).authorize(f"Bearer {result.token}")
        assert decision.allowed
        assert decision.user_id == user.id
        assert decision.session_id == result.session.id

    def test_denials_are_indistinguishable(self, store, codec, reconciler, user):
        guard = AuthorizationGuard(store, codec)
        live = reconciler.reconcile(user, "10.0.0.1")
        expired = reconciler.reconcile(user, "10.0.0.2")
        store.update_session(
            expired.session.id, expires_at=datetime.now(timezone.utc) - timedelta(seconds=1)
        )
        orphan = codec.issue(user.id, user.email)

        decisions = {
            DenyReason.MISSING_TOKEN: guard.authorize(None),
            DenyReason.INVALID_TOKEN: guard.authorize(f"Bearer {live.token}x"),
            DenyReason.NO_SESSION: guard.authorize(f"Bearer {orphan}"),
            DenyReason.SESSION_EXPIRED: guard.authorize(f"Bearer {expired.token}"),
        }
        for reason, decision in decisions.items():
            assert not decision.allowed
            assert decision.status_code == 401
            assert decision.reason is reason
            assert decision.user_id is None

    def test_non_ascii_signature_is_an_ordinary_denial(self, store, codec, reconciler, user):
        live = reconciler.reconcile(user, "10.0.0.1")
        header, payload, _ = live.token.split(".")
        decision = AuthorizationGuard(store, codec).authorize(f"Bearer {header}.{payload}.\u00e9")
        assert not decision.allowed
        assert decision.status_code == 401
        assert decision.reason is DenyReason.INVALID_TOKEN

    def test_session_owned_by_another_user_is_denied(self, store, codec, hasher, user):
        other = store.create_user("bob@example.com", hasher.hash("BobPassword1"))
        from nullpass.storage.models import Session

        forged = codec.issue(user.id, user.email)
        store.create_session(Session.new(other.id, forged))
        decision = AuthorizationGuard(store, codec).authorize(f"Bearer {forged}")
        assert not decision.allowed
        assert decision.reason is DenyReason.USER_MISMATCH

    def test_store_failure_is_a_server_error(self, codec, user):
        class BrokenStore:
            def get_session_by_token(self, token):
                raise ConnectionError("database unavailable")

        token = codec.issue(user.id, user.email)
        decision = AuthorizationGuard(BrokenStore(), codec).authorize(f"Bearer {token}")
        assert not decision.allowed
        assert decision.status_code == 500

    def test_internal_secret_comparison(self, store, codec):
        guard = AuthorizationGuard(store, codec, internal_secret="s3cret")
        assert guard.is_internal("s3cret")
        assert not guard.is_internal("wrong")
        assert not guard.is_internal(None)
        assert not AuthorizationGuard(store, codec).is_internal("")
