from __future__ import annotations

import json
import re
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response

from nullpass.api.schemas import (
    AccountConfirmRequest,
    CustomDomainRequest,
    EntitlementPatchRequest,
    Envelope,
    LoginRequest,
    PasswordChangeRequest,
    RegisterRequest,
    ServiceRequest,
    ServiceTierRequest,
    TwoFactorRequest,
    VerifyTokenRequest,
)
from nullpass.logging import get_logger
from nullpass.service.audit import AuditAction
from nullpass.service.billing import summarize_subscription, verify_signature
from nullpass.service.errors import NotFoundError, ValidationError
from nullpass.service.guard import SYSTEM_PRINCIPAL, AuthDecision
from nullpass.service.migration import MigrationRecord
from nullpass.service.runtime import Runtime
from nullpass.storage.models import BILLED_SERVICES

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

_IPV4 = re.compile(r"^(\d{1,3}\.){3}\d{1,3}$")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def client_ip(request: Request) -> str:
    """Resolve the caller's address from proxy headers, then the socket peer."""
    explicit = request.headers.get("x-client-ip")
    if explicit:
        return explicit.strip()
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        candidates = [ip.strip() for ip in forwarded.split(",") if ip.strip()]
        for candidate in candidates:
            if _IPV4.match(candidate):
                return candidate
        if candidates:
            return candidates[0]
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


_GATEWAY_CODES = {400: "validation_error", 403: "forbidden", 429: "rate_limited"}


def protect(cost: int = 1):
    """Gateway dependency; only explicit deny decisions block the request."""

    async def _protect(request: Request, runtime: Runtime = Depends(get_runtime)) -> None:
        target = request.url.path
        if request.url.query:
            target = f"{target}?{request.url.query}"
        decision = await runtime.gateway.decide(
            client_ip(request),
            request.headers.get("user-agent"),
            target,
            cost=cost,
        )
        if not decision.allowed:
            raise _http_error(
                _GATEWAY_CODES.get(decision.status_code, "forbidden"),
                decision.message or "Forbidden",
                decision.status_code,
            )

    return _protect


def _authorize(runtime: Runtime, authorization: Optional[str]) -> AuthDecision:
    decision = runtime.guard.authorize(authorization)
    if decision.allowed:
        return decision
    if decision.status_code >= 500:
        raise _http_error("server_error", "Internal server error", status_code=500)
    raise _http_error("unauthorized", "Unauthorized", status_code=401)


async def require_user(
    authorization: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
) -> AuthDecision:
    return _authorize(runtime, authorization)


async def require_internal(
    x_internal_secret: Optional[str] = Header(None, alias="x-internal-secret"),
    runtime: Runtime = Depends(get_runtime),
) -> AuthDecision:
    if runtime.guard.is_internal(x_internal_secret):
        return SYSTEM_PRINCIPAL
    raise _http_error("unauthorized", "Unauthorized", status_code=401)


async def require_admin(
    authorization: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
) -> AuthDecision:
    decision = _authorize(runtime, authorization)
    if not runtime.ledger.is_admin(decision.user_id):
        raise _http_error("forbidden", "Forbidden - Admin access required", status_code=403)
    return decision


async def require_admin_or_internal(
    authorization: Optional[str] = Header(None),
    x_internal_secret: Optional[str] = Header(None, alias="x-internal-secret"),
    runtime: Runtime = Depends(get_runtime),
) -> AuthDecision:
    if runtime.guard.is_internal(x_internal_secret):
        return SYSTEM_PRINCIPAL
    return await require_admin(authorization, runtime)


# auth


@router.post(
    "/auth/register",
    response_model=Envelope,
    status_code=201,
    tags=["auth"],
    dependencies=[Depends(protect(cost=2))],
)
async def register(
    body: RegisterRequest, request: Request, runtime: Runtime = Depends(get_runtime)
):
    data = runtime.auth.register(
        body.email, body.password, display_name=body.display_name, ip=client_ip(request)
    )
    return Envelope(status="ok", data=data)


@router.post(
    "/auth/login",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(protect(cost=2))],
)
async def login(body: LoginRequest, request: Request, runtime: Runtime = Depends(get_runtime)):
    outcome = runtime.auth.login(
        body.email, body.password, code=body.verification_code, ip=client_ip(request)
    )
    return Envelope(status="ok", data=outcome.as_response())


@router.post(
    "/auth/verify", response_model=Envelope, tags=["auth"], dependencies=[Depends(protect())]
)
async def verify_token(body: VerifyTokenRequest, runtime: Runtime = Depends(get_runtime)):
    return Envelope(status="ok", data=runtime.auth.verify_token(body.token))


@router.post(
    "/auth/logout", response_model=Envelope, tags=["auth"], dependencies=[Depends(protect())]
)
async def logout(
    request: Request,
    principal: AuthDecision = Depends(require_user),
    runtime: Runtime = Depends(get_runtime),
):
    data = runtime.auth.logout(principal.user_id, principal.session_id, ip=client_ip(request))
    return Envelope(status="ok", data=data)


@router.get("/auth/me", response_model=Envelope, tags=["auth"], dependencies=[Depends(protect())])
async def me(
    principal: AuthDecision = Depends(require_user), runtime: Runtime = Depends(get_runtime)
):
    return Envelope(status="ok", data=runtime.auth.me(principal.user_id))


@router.get(
    "/auth/sessions", response_model=Envelope, tags=["auth"], dependencies=[Depends(protect())]
)
async def list_sessions(
    principal: AuthDecision = Depends(require_user), runtime: Runtime = Depends(get_runtime)
):
    return Envelope(status="ok", data={"sessions": runtime.auth.list_sessions(principal.user_id)})


@router.delete(
    "/auth/sessions", response_model=Envelope, tags=["auth"], dependencies=[Depends(protect())]
)
async def delete_sessions(
    request: Request,
    session_id: Optional[str] = Query(None, alias="id"),
    principal: AuthDecision = Depends(require_user),
    runtime: Runtime = Depends(get_runtime),
):
    data = runtime.auth.delete_sessions(principal.user_id, session_id, ip=client_ip(request))
    return Envelope(status="ok", data=data)


@router.post(
    "/auth/password",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(protect(cost=2))],
)
async def change_password(
    body: PasswordChangeRequest,
    principal: AuthDecision = Depends(require_user),
    runtime: Runtime = Depends(get_runtime),
):
    data = runtime.auth.change_password(
        principal.user_id, body.current_password, body.new_password
    )
    return Envelope(status="ok", data=data)


@router.post("/auth/2fa", response_model=Envelope, tags=["auth"], dependencies=[Depends(protect())])
async def toggle_two_factor(
    body: TwoFactorRequest,
    principal: AuthDecision = Depends(require_user),
    runtime: Runtime = Depends(get_runtime),
):
    if not body.enable:
        data = runtime.auth.disable_two_factor(principal.user_id, body.verification_code)
    elif body.verification_code:
        data = runtime.auth.confirm_two_factor(principal.user_id, body.verification_code)
    else:
        data = runtime.auth.begin_two_factor(principal.user_id)
    return Envelope(status="ok", data=data)


@router.post(
    "/auth/disable-account",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(protect(cost=2))],
)
async def disable_account(
    body: AccountConfirmRequest,
    principal: AuthDecision = Depends(require_user),
    runtime: Runtime = Depends(get_runtime),
):
    data = await runtime.auth.disable_account(
        principal.user_id, body.password, body.verification_code
    )
    return Envelope(status="ok", data=data)


@router.post(
    "/auth/delete-account",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(protect(cost=2))],
)
async def delete_account(
    body: AccountConfirmRequest,
    principal: AuthDecision = Depends(require_user),
    runtime: Runtime = Depends(get_runtime),
):
    data = await runtime.auth.delete_account(
        principal.user_id, body.password, body.verification_code
    )
    return Envelope(status="ok", data=data)


@router.get("/auth/user/{user_id}", response_model=Envelope, tags=["internal"])
async def internal_user(
    user_id: str,
    _: AuthDecision = Depends(require_internal),
    runtime: Runtime = Depends(get_runtime),
):
    return Envelope(status="ok", data=runtime.auth.internal_user(user_id))


# services


@router.get("/services", response_model=Envelope, tags=["services"], dependencies=[Depends(protect())])
async def list_services(
    service: Optional[str] = Query(None),
    principal: AuthDecision = Depends(require_user),
    runtime: Runtime = Depends(get_runtime),
):
    entitlements = runtime.ledger.list_for_user(principal.user_id, service)
    return Envelope(status="ok", data={"services": [ent.public() for ent in entitlements]})


@router.post("/services", response_model=Envelope, tags=["services"], dependencies=[Depends(protect())])
async def update_service_tier(
    body: ServiceTierRequest,
    principal: AuthDecision = Depends(require_user),
    runtime: Runtime = Depends(get_runtime),
):
    entitlement = runtime.ledger.upsert(principal.user_id, body.service, {"tier": body.tier})
    runtime.audit.record(
        principal.user_id,
        AuditAction.SERVICE_TIER_CHANGE,
        {"service": body.service, "tier": body.tier},
    )
    return Envelope(status="ok", data={"entitlement": entitlement.public()})


@router.get(
    "/connect/check", response_model=Envelope, tags=["services"], dependencies=[Depends(protect())]
)
async def check_connection(
    service: Optional[str] = Query(None),
    principal: AuthDecision = Depends(require_user),
    runtime: Runtime = Depends(get_runtime),
):
    if not service:
        raise ValidationError("Service parameter is required")
    service = runtime.ledger.normalize_service(service)
    entitlement = runtime.ledger.get(principal.user_id, service)
    if entitlement is None:
        data = {
            "connected": False,
            "service": service,
            "message": "No entitlement found for this service",
        }
    else:
        data = {
            "connected": entitlement.connected,
            "service": entitlement.service,
            "tier": entitlement.tier,
            "isPremium": entitlement.is_premium,
        }
    return Envelope(status="ok", data=data)


async def _set_connected(runtime: Runtime, user_id: str, service: str, connected: bool) -> dict:
    entitlement, changed = runtime.ledger.set_connected(user_id, service, connected)
    verb = "connected to" if connected else "disconnected from"
    if not changed:
        return {
            "connected": connected,
            "service": service,
            "message": f"Already {verb} this service",
        }
    action = (
        AuditAction.SERVICE_ENTITLEMENT_CONNECT
        if connected
        else AuditAction.SERVICE_ENTITLEMENT_DISCONNECT
    )
    runtime.audit.record(user_id, action, {"service": service})
    logger.info("service_connection_changed", user_id=user_id, service=service, connected=connected)
    return {
        "connected": entitlement.connected,
        "service": entitlement.service,
        "tier": entitlement.tier,
        "isPremium": entitlement.is_premium,
        "message": f"Successfully {verb} service",
    }


@router.post(
    "/connect/disconnect", response_model=Envelope, tags=["services"], dependencies=[Depends(protect())]
)
async def disconnect_service(
    body: ServiceRequest,
    principal: AuthDecision = Depends(require_user),
    runtime: Runtime = Depends(get_runtime),
):
    data = await _set_connected(runtime, principal.user_id, body.service, False)
    return Envelope(status="ok", data=data)


@router.post(
    "/connect/connect", response_model=Envelope, tags=["services"], dependencies=[Depends(protect())]
)
async def connect_service(
    body: ServiceRequest,
    principal: AuthDecision = Depends(require_user),
    runtime: Runtime = Depends(get_runtime),
):
    data = await _set_connected(runtime, principal.user_id, body.service, True)
    return Envelope(status="ok", data=data)


@router.get(
    "/user/custom-domain", response_model=Envelope, tags=["services"], dependencies=[Depends(protect())]
)
async def get_custom_domain(
    principal: AuthDecision = Depends(require_user), runtime: Runtime = Depends(get_runtime)
):
    return Envelope(status="ok", data=runtime.ledger.get_custom_domain(principal.user_id))


@router.post(
    "/user/custom-domain", response_model=Envelope, tags=["services"], dependencies=[Depends(protect())]
)
async def claim_custom_domain(
    body: CustomDomainRequest,
    principal: AuthDecision = Depends(require_user),
    runtime: Runtime = Depends(get_runtime),
):
    domain = runtime.ledger.claim_custom_domain(principal.user_id, body.domain)
    runtime.audit.record(
        principal.user_id, AuditAction.USER_UPDATE, {"field": "customDomain", "value": domain}
    )
    return Envelope(
        status="ok",
        data={
            "success": True,
            "domain": domain,
            "message": "Domain connected successfully. Please configure your DNS settings.",
        },
    )


@router.delete(
    "/user/custom-domain", response_model=Envelope, tags=["services"], dependencies=[Depends(protect())]
)
async def release_custom_domain(
    principal: AuthDecision = Depends(require_user), runtime: Runtime = Depends(get_runtime)
):
    runtime.ledger.release_custom_domain(principal.user_id)
    runtime.audit.record(
        principal.user_id, AuditAction.USER_UPDATE, {"field": "customDomain", "value": None}
    )
    return Envelope(
        status="ok",
        data={"success": True, "message": "Custom domain disconnected successfully"},
    )


# audit and billing


@router.get("/audit", response_model=Envelope, tags=["audit"], dependencies=[Depends(protect())])
async def list_audit(
    limit: int = Query(50),
    offset: int = Query(0),
    action: Optional[str] = Query(None),
    principal: AuthDecision = Depends(require_user),
    runtime: Runtime = Depends(get_runtime),
):
    data = runtime.audit.list_for_user(
        principal.user_id, limit=limit, offset=offset, action=action
    )
    return Envelope(status="ok", data=data)


@router.get(
    "/subscription", response_model=Envelope, tags=["billing"], dependencies=[Depends(protect())]
)
async def get_subscription(
    principal: AuthDecision = Depends(require_user), runtime: Runtime = Depends(get_runtime)
):
    drop = runtime.ledger.get(principal.user_id, "DROP")
    if drop is None or not drop.polar_subscription_id:
        raise NotFoundError("No active subscription")
    subscription = await runtime.polar.get_subscription(drop.polar_subscription_id)
    return Envelope(status="ok", data=summarize_subscription(subscription))


@router.post("/webhooks/{service}", response_model=Envelope, tags=["billing"])
async def billing_webhook(
    service: str, request: Request, runtime: Runtime = Depends(get_runtime)
):
    service = service.upper()
    if service not in BILLED_SERVICES:
        raise NotFoundError("Not found")
    body = await request.body()
    verify_signature(runtime.settings.polar_webhook_secret(service), request.headers, body)
    try:
        payload = json.loads(body)
    except ValueError as exc:
        raise ValidationError("Invalid webhook payload") from exc
    if not isinstance(payload, dict):
        raise ValidationError("Invalid webhook payload")
    await runtime.webhooks.handle(service, payload)
    return Envelope(status="ok", data={"received": True})


# migration and admin


@router.post(
    "/migrate", response_model=Envelope, tags=["internal"], dependencies=[Depends(protect(cost=5))]
)
async def migrate_user(
    body: MigrationRecord,
    response: Response,
    _: AuthDecision = Depends(require_internal),
    runtime: Runtime = Depends(get_runtime),
):
    data, created = runtime.migration.migrate_user(body)
    response.status_code = 201 if created else 200
    return Envelope(status="ok", data=data)


@router.get("/admin/users", response_model=Envelope, tags=["admin"])
async def admin_list_users(
    page: int = Query(1),
    limit: int = Query(50),
    _: AuthDecision = Depends(require_admin_or_internal),
    runtime: Runtime = Depends(get_runtime),
):
    return Envelope(status="ok", data=runtime.admin.list_users(page=page, limit=limit))


@router.get("/admin/users/stats", response_model=Envelope, tags=["admin"])
async def admin_user_stats(
    _: AuthDecision = Depends(require_admin_or_internal),
    runtime: Runtime = Depends(get_runtime),
):
    return Envelope(status="ok", data=runtime.admin.stats())


@router.patch("/admin/users/{user_id}", response_model=Envelope, tags=["admin"])
async def admin_update_user_service(
    user_id: str,
    body: EntitlementPatchRequest,
    principal: AuthDecision = Depends(require_admin_or_internal),
    runtime: Runtime = Depends(get_runtime),
):
    data = runtime.admin.update_service(
        user_id,
        body.service,
        body.changes(),
        admin_user_id=None if principal.system else principal.user_id,
    )
    return Envelope(status="ok", data=data)
