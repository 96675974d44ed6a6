from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from nullpass.logging import get_logger
from nullpass.service.audit import AuditAction, AuditLog
from nullpass.service.billing import PolarClient
from nullpass.service.errors import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    ServerError,
    ValidationError,
)
from nullpass.service.passwords import PasswordHasherService
from nullpass.service.sessions import SessionReconciler
from nullpass.service.tokens import TokenCodec
from nullpass.service.totp import TOTPVerifier, qr_data_url
from nullpass.storage.common import IdentityStore
from nullpass.storage.errors import ConstraintViolation
from nullpass.storage.models import ServiceEntitlement, User

logger = get_logger(__name__)

INVALID_CREDENTIALS = "Invalid credentials"


@dataclass
class LoginOutcome:
    user: User
    token: Optional[str] = None
    services: List[ServiceEntitlement] = field(default_factory=list)
    requires_2fa: bool = False
    pending_token: Optional[str] = None

    def as_response(self) -> Dict[str, Any]:
        if self.requires_2fa:
            return {
                "user": self.user.public(),
                "requires2FA": True,
                "pendingToken": self.pending_token,
                "message": "2FA verification required",
            }
        return {
            "user": self.user.public(),
            "token": self.token,
            "services": [ent.public() for ent in self.services],
        }


def user_profile(user: User) -> Dict[str, Any]:
    profile = user.public()
    profile.update(
        {
            "twoFactorEnabled": user.two_factor_enabled,
            "createdAt": user.created_at.isoformat(),
            "updatedAt": user.updated_at.isoformat(),
        }
    )
    return profile


class AuthService:
    """Registration, login and the self-service account lifecycle."""

    def __init__(
        self,
        store: IdentityStore,
        hasher: PasswordHasherService,
        codec: TokenCodec,
        totp: TOTPVerifier,
        reconciler: SessionReconciler,
        audit: AuditLog,
        polar: PolarClient,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.codec = codec
        self.totp = totp
        self.reconciler = reconciler
        self.audit = audit
        self.polar = polar

    def _require_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user

    # registration and login

    def register(
        self,
        email: str,
        password: str,
        *,
        display_name: Optional[str] = None,
        ip: Optional[str] = None,
    ) -> Dict[str, Any]:
        email = email.strip()
        if self.store.get_user_by_email(email) is not None:
            logger.warning("register_duplicate_email")
            raise ConflictError("User already exists")
        try:
            user = self.store.create_user(
                email, self.hasher.hash(password), display_name=display_name
            )
        except ConstraintViolation as exc:
            raise ConflictError("User already exists") from exc
        result = self.reconciler.reconcile(
            user, ip, action=AuditAction.USER_REGISTER, audit_data={"email": user.email}
        )
        logger.info("user_registered", user_id=user.id)
        return {
            "user": {**user.public(), "createdAt": user.created_at.isoformat()},
            "token": result.token,
        }

    def login(
        self,
        email: str,
        password: str,
        *,
        code: Optional[str] = None,
        ip: Optional[str] = None,
    ) -> LoginOutcome:
        user = self.store.get_user_by_email(email.strip())
        if user is None or not user.password_hash:
            logger.warning("login_failed", reason="unknown_user")
            raise AuthenticationError(INVALID_CREDENTIALS)
        if not self.hasher.verify(user.password_hash, password):
            logger.warning("login_failed", reason="bad_password", user_id=user.id)
            raise AuthenticationError(INVALID_CREDENTIALS)
        if user.disabled:
            logger.warning("login_failed", reason="disabled", user_id=user.id)
            raise AuthenticationError(INVALID_CREDENTIALS)

        if user.two_factor_enabled:
            if not code:
                # the pending token has no session row, so it never passes the guard
                return LoginOutcome(
                    user=user,
                    requires_2fa=True,
                    pending_token=self.codec.issue(user.id, user.email),
                )
            if not user.two_factor_secret:
                logger.error("login_2fa_secret_missing", user_id=user.id)
                raise ServerError("2FA configuration error")
            if not self.totp.verify(user.two_factor_secret, code):
                logger.warning("login_failed", reason="bad_2fa_code", user_id=user.id)
                raise AuthenticationError("Invalid 2FA verification code")

        if self.hasher.needs_rehash(user.password_hash):
            self.store.update_user(user.id, password_hash=self.hasher.hash(password))
            logger.info("password_rehashed", user_id=user.id)

        result = self.reconciler.reconcile(
            user,
            ip,
            audit_data={"twoFactorUsed": bool(user.two_factor_enabled and code)},
        )
        return LoginOutcome(
            user=user,
            token=result.token,
            services=self.store.list_entitlements(user.id),
        )

    def verify_token(self, token: Optional[str]) -> Dict[str, Any]:
        payload = self.codec.verify(token)
        if payload is None:
            raise AuthenticationError("Invalid token")
        return {"valid": True, "payload": payload.as_dict()}

    def me(self, user_id: str) -> Dict[str, Any]:
        user = self._require_user(user_id)
        return {
            "user": user_profile(user),
            "services": [ent.public() for ent in self.store.list_entitlements(user_id)],
        }

    def internal_user(self, user_id: str) -> Dict[str, Any]:
        return self.me(user_id)

    # sessions

    def list_sessions(self, user_id: str) -> List[Dict[str, Any]]:
        sessions = [s for s in self.store.list_sessions(user_id) if not s.is_expired()]
        sessions.sort(key=lambda s: s.created_at, reverse=True)
        return [s.public() for s in sessions]

    def delete_sessions(
        self, user_id: str, session_id: Optional[str] = None, *, ip: Optional[str] = None
    ) -> Dict[str, Any]:
        if session_id:
            if not self.store.delete_session(session_id, user_id):
                raise NotFoundError("Session not found")
            self.audit.record(
                user_id, AuditAction.SESSION_DELETE, {"sessionId": session_id, "ip": ip or "unknown"}
            )
            return {"success": True, "deleted": 1}
        deleted = self.store.delete_user_sessions(user_id)
        self.audit.record(
            user_id, AuditAction.SESSION_DELETE, {"all": True, "count": deleted, "ip": ip or "unknown"}
        )
        return {"success": True, "deleted": deleted}

    def logout(self, user_id: str, session_id: str, *, ip: Optional[str] = None) -> Dict[str, Any]:
        self.store.delete_session(session_id, user_id)
        self.audit.record(user_id, AuditAction.USER_LOGOUT, {"ip": ip or "unknown"})
        return {"success": True}

    # credentials

    def change_password(
        self, user_id: str, current_password: str, new_password: str
    ) -> Dict[str, Any]:
        user = self._require_user(user_id)
        if not self.hasher.verify(user.password_hash, current_password):
            logger.warning("password_change_failed", user_id=user_id)
            raise AuthenticationError("Invalid current password")
        self.store.update_user(user_id, password_hash=self.hasher.hash(new_password))
        self.audit.record(user_id, AuditAction.PASSWORD_CHANGE, {})
        return {"success": True, "message": "Password changed successfully"}

    def begin_two_factor(self, user_id: str) -> Dict[str, Any]:
        user = self._require_user(user_id)
        if user.two_factor_enabled:
            raise ValidationError("2FA is already enabled")
        enrollment = self.totp.generate_secret(user.email)
        self.store.update_user(user_id, pending_two_factor_secret=enrollment.secret)
        return {
            "secret": enrollment.secret,
            "manualEntryKey": enrollment.secret,
            "otpauthUrl": enrollment.provisioning_uri,
            "qrCode": qr_data_url(enrollment.provisioning_uri),
            "message": "Scan the QR code with your authenticator app",
        }

    def confirm_two_factor(self, user_id: str, code: str) -> Dict[str, Any]:
        user = self._require_user(user_id)
        pending = user.pending_two_factor_secret
        if not pending or not self.totp.verify(pending, code):
            raise ValidationError("Invalid verification code")
        self.store.update_user(
            user_id,
            two_factor_enabled=True,
            two_factor_secret=pending,
            pending_two_factor_secret=None,
        )
        self.audit.record(user_id, AuditAction.TWO_FACTOR_ENABLE, {})
        return {"message": "2FA enabled successfully", "twoFactorEnabled": True}

    def disable_two_factor(self, user_id: str, code: Optional[str]) -> Dict[str, Any]:
        if not code:
            raise ValidationError("2FA verification code is required to disable 2FA")
        user = self._require_user(user_id)
        if not user.two_factor_enabled or not user.two_factor_secret:
            raise ValidationError("2FA is not enabled")
        if not self.totp.verify(user.two_factor_secret, code):
            raise ValidationError("Invalid verification code")
        self.store.update_user(
            user_id,
            two_factor_enabled=False,
            two_factor_secret=None,
            pending_two_factor_secret=None,
        )
        self.audit.record(user_id, AuditAction.TWO_FACTOR_DISABLE, {})
        return {"message": "2FA disabled successfully", "twoFactorEnabled": False}

    # account lifecycle

    def _confirm_owner(self, user: User, password: str, code: Optional[str]) -> None:
        if not user.password_hash or not self.hasher.verify(user.password_hash, password):
            logger.warning("account_confirm_failed", reason="bad_password", user_id=user.id)
            raise AuthenticationError("Invalid password")
        if not user.two_factor_enabled:
            return
        if not code:
            raise AuthenticationError("2FA verification code is required")
        if not user.two_factor_secret:
            logger.error("account_2fa_secret_missing", user_id=user.id)
            raise ServerError("2FA configuration error")
        if not self.totp.verify(user.two_factor_secret, code):
            logger.warning("account_confirm_failed", reason="bad_2fa_code", user_id=user.id)
            raise AuthenticationError("Invalid 2FA verification code")

    async def _cancel_subscriptions(self, user_id: str) -> None:
        for ent in self.store.list_entitlements(user_id):
            if ent.polar_subscription_id:
                await self.polar.cancel_subscription(ent.polar_subscription_id)

    async def disable_account(
        self, user_id: str, password: str, code: Optional[str] = None
    ) -> Dict[str, Any]:
        user = self._require_user(user_id)
        self._confirm_owner(user, password, code)
        await self._cancel_subscriptions(user_id)
        self.audit.record(user_id, AuditAction.USER_DISABLE, {"email": user.email})
        self.store.update_user(user_id, disabled=True)
        self.store.delete_user_sessions(user_id)
        logger.info("account_disabled", user_id=user_id)
        return {"success": True, "message": "Account disabled successfully"}

    async def delete_account(
        self, user_id: str, password: str, code: Optional[str] = None
    ) -> Dict[str, Any]:
        user = self._require_user(user_id)
        self._confirm_owner(user, password, code)
        await self._cancel_subscriptions(user_id)
        self.audit.record(user_id, AuditAction.USER_DELETE, {"email": user.email})
        self.store.delete_user(user_id)
        logger.info("account_deleted", user_id=user_id)
        return {"success": True, "message": "Account deleted successfully"}
