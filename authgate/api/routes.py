from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Request

from authgate.api.schemas import (
    DeviceInfoModel,
    Envelope,
    LoginRequest,
    LoginResponse,
    SessionListResponse,
    SessionResponse,
    SessionTerminateRequest,
    SessionValidateRequest,
    TokenPayload,
    TwoFactorDisableRequest,
    TwoFactorEnableRequest,
    TwoFactorSetupResponse,
    TwoFactorStatusResponse,
    TwoFactorVerifyRequest,
    TwoFactorVerifyResponse,
)
from authgate.logging import get_logger
from authgate.service.errors import (
    AccountLockedError,
    AuthenticationError,
    NotFoundError,
    ServiceError,
    ServiceUnavailableError,
    TwoFactorError,
)
from authgate.service.gateway import AccessContext, AuthError, AuthState
from authgate.service.runtime import get_runtime
from authgate.service.sessions import DeviceInfo
from authgate.service.tokens import AuthTokens

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

# Rejection codes that are not plain 401s
_REJECTION_ERRORS: dict[str, type[ServiceError]] = {
    "account_locked": AccountLockedError,
    "service_error": ServiceUnavailableError,
}


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _rejection(error: AuthError, default: type[ServiceError] = AuthenticationError) -> ServiceError:
    error_cls = _REJECTION_ERRORS.get(error.code, default)
    return error_cls(error.message, error_code=error.code)


def _device_info(body: Optional[DeviceInfoModel], request: Request) -> Optional[DeviceInfo]:
    if body is not None:
        return DeviceInfo(
            user_agent=body.user_agent,
            screen=body.screen,
            timezone=body.timezone,
            language=body.language,
        )
    user_agent = request.headers.get("user-agent")
    return DeviceInfo(user_agent=user_agent) if user_agent else None


def _client_ip(request: Request) -> Optional[str]:
    """Originating client address, honouring reverse-proxy headers."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else None


def _token_payload(tokens: Optional[AuthTokens]) -> Optional[TokenPayload]:
    if tokens is None:
        return None
    return TokenPayload(
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        token_type=tokens.token_type,
        expires_at=tokens.expires_at,
    )


def get_principal(authorization: Optional[str] = Header(None)) -> AccessContext:
    runtime = get_runtime()
    token = runtime.gateway.extract_bearer(authorization)
    if not token:
        raise _http_error("unauthorized", "bearer access token required", status_code=401)
    return runtime.gateway.authenticate(token)


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
def login(body: LoginRequest, request: Request):
    """Verify a password and either open a session or hold for the second factor.

    Raises:
        401: credentials rejected or account inactive
        423: account locked
        503: credential store unavailable
    """
    runtime = get_runtime()
    result = runtime.gateway.sign_in(
        body.email,
        body.password,
        _device_info(body.device_info, request),
        _client_ip(request),
        attempt_id=body.attempt_id,
    )
    if result.state == AuthState.REJECTED:
        raise _rejection(result.error)
    return Envelope(
        status="ok",
        data=LoginResponse(
            user_id=result.user.id,
            state=result.state.value,
            requires_2fa=result.requires_2fa,
            requires_2fa_setup=result.requires_2fa_setup,
            session_id=result.session_id,
            pending_token=result.pending_token,
            tokens=_token_payload(result.tokens),
        ),
    )


@router.post("/auth/2fa/verify", response_model=Envelope, tags=["auth"])
def verify_two_factor(body: TwoFactorVerifyRequest, request: Request):
    runtime = get_runtime()
    result = runtime.gateway.verify_two_factor(
        body.user_id,
        body.token,
        body.pending_token,
        _device_info(body.device_info, request),
        _client_ip(request),
    )
    if not result.success:
        raise _rejection(result.error, default=TwoFactorError)
    return Envelope(
        status="ok",
        data=TwoFactorVerifyResponse(
            success=True,
            state=result.state.value,
            session_id=result.session_id,
            tokens=_token_payload(result.tokens),
        ),
    )


@router.post("/auth/2fa/setup", response_model=Envelope, tags=["auth"])
def setup_two_factor(principal: AccessContext = Depends(get_principal)):
    """Start enrollment; the credential stays inactive until confirmed with PUT."""
    runtime = get_runtime()
    setup = runtime.gateway.setup_two_factor(principal.user_id)
    return Envelope(
        status="ok",
        data=TwoFactorSetupResponse(
            secret=setup.secret,
            qr_payload=setup.qr_payload,
            manual_entry_key=setup.manual_entry_key,
            backup_codes=setup.backup_codes,
        ),
    )


@router.put("/auth/2fa/setup", response_model=Envelope, tags=["auth"])
def enable_two_factor(
    body: TwoFactorEnableRequest, principal: AccessContext = Depends(get_principal)
):
    runtime = get_runtime()
    if not runtime.gateway.verify_and_enable_2fa(principal.user_id, body.token):
        raise TwoFactorError("verification code rejected", status_code=400)
    return Envelope(status="ok", data={"enabled": True})


@router.delete("/auth/2fa", response_model=Envelope, tags=["auth"])
def disable_two_factor(
    body: TwoFactorDisableRequest, principal: AccessContext = Depends(get_principal)
):
    runtime = get_runtime()
    status = runtime.gateway.two_factor_status(principal.user_id)
    if not status.configured and not status.enabled:
        raise NotFoundError("two-factor authentication is not configured")
    if not runtime.gateway.disable_2fa(principal.user_id, body.current_password):
        raise _http_error("forbidden", "current password is incorrect", status_code=403)
    return Envelope(status="ok", data={"enabled": False})


@router.get("/auth/2fa/status", response_model=Envelope, tags=["auth"])
def two_factor_status(principal: AccessContext = Depends(get_principal)):
    runtime = get_runtime()
    status = runtime.gateway.two_factor_status(principal.user_id)
    return Envelope(
        status="ok",
        data=TwoFactorStatusResponse(
            enabled=status.enabled,
            configured=status.configured,
            backup_codes_remaining=status.backup_codes_remaining,
        ),
    )


@router.post("/sessions/{session_id}/terminate", response_model=Envelope, tags=["sessions"])
def terminate_session(
    session_id: str = Path(..., max_length=128),
    body: Optional[SessionTerminateRequest] = None,
    principal: AccessContext = Depends(get_principal),
):
    runtime = get_runtime()
    runtime.gateway.sessions.get_owned_session(principal.user_id, session_id)
    reason = body.reason if body else "manual_logout"
    terminated = runtime.gateway.terminate_session(session_id, reason)
    return Envelope(status="ok", data={"session_id": session_id, "terminated": terminated})


@router.post("/sessions/validate", response_model=Envelope, tags=["sessions"])
def validate_session(
    body: SessionValidateRequest, principal: AccessContext = Depends(get_principal)
):
    runtime = get_runtime()
    valid = runtime.gateway.validate_session_security(principal.user_id, body.session_id)
    return Envelope(status="ok", data={"session_id": body.session_id, "valid": valid})


@router.get("/sessions", response_model=Envelope, tags=["sessions"])
def list_sessions(principal: AccessContext = Depends(get_principal)):
    runtime = get_runtime()
    sessions = runtime.gateway.sessions.list_active_sessions(principal.user_id)
    return Envelope(
        status="ok",
        data=SessionListResponse(
            items=[
                SessionResponse(
                    id=s.id,
                    created_at=s.created_at,
                    expires_at=s.expires_at,
                    last_activity=s.last_activity,
                    device_fingerprint=s.device_fingerprint,
                    user_agent=s.user_agent,
                    ip_address=s.ip_address,
                    current=s.id == principal.session_id,
                )
                for s in sessions
            ]
        ),
    )
