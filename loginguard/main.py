from __future__ import annotations

import logging
import os
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

from dotenv import load_dotenv
from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from loginguard.audit import AuditTrailRecorder
from loginguard.auth_service import AuthService, LoginResult
from loginguard.database import SupabaseConfig, SupabaseStore
from loginguard.errors import AccountLocked, AuthError, InfrastructureError, InvalidCredentials
from loginguard.geolocation import GeolocationConfig, GeolocationResolver
from loginguard.lockout import LockoutPolicy
from loginguard.mfa import MfaSettings
from loginguard.passwords import PasswordSettings
from loginguard.rate_limit import InMemoryRateLimiter, RateLimitSettings, rate_limited
from loginguard.repository import AccountRepository, SecurityEventRepository
from loginguard.risk_engine import FraudEngineSettings, FraudRiskEngine
from loginguard.security import AuthContext, authenticate_session, client_ip, client_user_agent
from loginguard.tokens import TokenIssuer, TokenSettings

load_dotenv()

DEFAULT_RATE_LIMIT_ENABLED = True
DEFAULT_RATE_LIMIT_REQUESTS = 50
DEFAULT_RATE_LIMIT_WINDOW_SECONDS = 900
DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_HISTORY_LIMIT = 10
REQUEST_ID_HEADER = "X-Request-ID"
logger = logging.getLogger("loginguard")


def _configure_logging() -> None:
    log_level_name = os.getenv("LOG_LEVEL", DEFAULT_LOG_LEVEL).strip().upper() or DEFAULT_LOG_LEVEL
    log_level = getattr(logging, log_level_name, logging.INFO)

    if not logging.getLogger().handlers:
        logging.basicConfig(
            level=log_level,
            format="%(asctime)s %(levelname)s %(name)s %(message)s",
        )
    else:
        logging.getLogger().setLevel(log_level)

    logger.setLevel(log_level)


_configure_logging()


class RegisterRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=255)
    password: str = Field(..., min_length=1, max_length=128)
    phone_number: str | None = Field(default=None, max_length=32)

    model_config = ConfigDict(extra="forbid")


class LoginRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=255)
    password: str = Field(..., min_length=1, max_length=128)

    model_config = ConfigDict(extra="forbid")


class VerifyMfaRequest(BaseModel):
    temp_token: str = Field(..., min_length=1)
    mfa_code: str = Field(..., pattern=r"^\d{6}$")

    model_config = ConfigDict(extra="forbid")


class UserSummary(BaseModel):
    id: str
    email: str


class MfaSetupResponse(BaseModel):
    secret: str
    qr_code: str
    provisioning_uri: str


class RegisterResponse(BaseModel):
    message: str
    user: UserSummary
    mfa_setup: MfaSetupResponse


class LoginResponse(BaseModel):
    message: str
    mfa_required: bool = False
    token: str | None = None
    temp_token: str | None = None
    user: UserSummary | None = None


class ProfileResponse(BaseModel):
    id: str
    email: str
    phone_number: str | None = None
    mfa_enabled: bool
    created_at: datetime | None = None
    last_login_at: datetime | None = None


class FraudAlertsResponse(BaseModel):
    alerts: list[dict[str, Any]]


class LoginHistoryResponse(BaseModel):
    history: list[dict[str, Any]]


def _parse_bool_env(raw_value: str | None, default: bool, variable_name: str) -> bool:
    if raw_value is None or not raw_value.strip():
        return default
    normalized = raw_value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"{variable_name} must be a boolean value (true/false).")


def _load_rate_limit_settings() -> RateLimitSettings:
    enabled = _parse_bool_env(
        os.getenv("RATE_LIMIT_ENABLED"),
        DEFAULT_RATE_LIMIT_ENABLED,
        "RATE_LIMIT_ENABLED",
    )
    raw_requests = os.getenv("RATE_LIMIT_REQUESTS", str(DEFAULT_RATE_LIMIT_REQUESTS)).strip()
    raw_window_seconds = os.getenv("RATE_LIMIT_WINDOW_SECONDS", str(DEFAULT_RATE_LIMIT_WINDOW_SECONDS)).strip()

    try:
        requests = int(raw_requests)
        window_seconds = int(raw_window_seconds)
    except ValueError as exc:
        raise ValueError(
            "RATE_LIMIT_REQUESTS and RATE_LIMIT_WINDOW_SECONDS must be integer values."
        ) from exc

    return RateLimitSettings(enabled=enabled, requests=requests, window_seconds=window_seconds)


def _error_detail(exc: AuthError) -> str:
    if isinstance(exc, InfrastructureError):
        return exc.public_message
    return str(exc)


def _to_http_exception(exc: AuthError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=_error_detail(exc))


def _login_response(result: LoginResult) -> LoginResponse:
    user = UserSummary(id=result.user.id, email=result.user.email)
    if result.mfa_required:
        return LoginResponse(message="MFA required", mfa_required=True, temp_token=result.temp_token)
    return LoginResponse(message="Login successful", token=result.token, user=user)


@asynccontextmanager
async def lifespan(app: FastAPI):
    store = SupabaseStore(SupabaseConfig.from_env()).open()
    accounts = AccountRepository(store)
    security_events = SecurityEventRepository(store)
    audit = AuditTrailRecorder(security_events)
    token_issuer = TokenIssuer(TokenSettings.from_env())
    auth_service = AuthService(
        accounts=accounts,
        audit=audit,
        tokens=token_issuer,
        lockout_policy=LockoutPolicy.from_env(),
        password_settings=PasswordSettings.from_env(),
        mfa_settings=MfaSettings.from_env(),
    )
    fraud_engine = FraudRiskEngine(
        repository=security_events,
        geolocation=GeolocationResolver(GeolocationConfig.from_env()),
        audit=audit,
        settings=FraudEngineSettings.from_env(),
    )
    rate_limit_settings = _load_rate_limit_settings()

    app.state.store = store
    app.state.audit = audit
    app.state.token_issuer = token_issuer
    app.state.auth_service = auth_service
    app.state.fraud_engine = fraud_engine
    app.state.rate_limit_settings = rate_limit_settings
    app.state.rate_limiter = InMemoryRateLimiter(settings=rate_limit_settings)

    try:
        yield
    finally:
        store.close()


app = FastAPI(
    title="Banking Login Security API",
    version="1.0.0",
    lifespan=lifespan,
)


@app.middleware("http")
async def request_context_and_logging_middleware(request: Request, call_next):
    request_id = request.headers.get(REQUEST_ID_HEADER, "").strip() or str(uuid.uuid4())
    request.state.request_id = request_id
    start_time = time.perf_counter()

    try:
        response = await call_next(request)
    except Exception:
        duration_ms = (time.perf_counter() - start_time) * 1000
        logger.exception(
            "request_failed request_id=%s method=%s path=%s duration_ms=%.2f",
            request_id,
            request.method,
            request.url.path,
            duration_ms,
        )
        raise

    duration_ms = (time.perf_counter() - start_time) * 1000
    response.headers[REQUEST_ID_HEADER] = request_id
    logger.info(
        "request_complete request_id=%s method=%s path=%s status_code=%s duration_ms=%.2f",
        request_id,
        request.method,
        request.url.path,
        response.status_code,
        duration_ms,
    )
    return response


@app.get("/health")
def health_check() -> dict[str, str]:
    return {
        "status": "ok",
        "service": "login-security-backend",
        "storage": "open" if app.state.store.is_open else "closed",
    }


@app.post("/auth/register", response_model=RegisterResponse, status_code=201)
def register(
    payload: RegisterRequest,
    request: Request,
    __: None = Depends(rate_limited("registration")),
) -> RegisterResponse:
    request_id = getattr(request.state, "request_id", "unknown")
    try:
        result = app.state.auth_service.register(
            payload.email,
            payload.password,
            payload.phone_number,
            client_ip(request),
            client_user_agent(request),
        )
    except AuthError as exc:
        logger.warning("registration_failed request_id=%s error=%s", request_id, str(exc))
        raise _to_http_exception(exc) from exc
    except Exception as exc:
        logger.exception("registration_internal_error request_id=%s", request_id)
        raise HTTPException(status_code=500, detail="Registration failed") from exc

    return RegisterResponse(
        message="User registered successfully",
        user=UserSummary(id=result.user.id, email=result.user.email),
        mfa_setup=MfaSetupResponse(
            secret=result.mfa_setup.secret,
            qr_code=result.mfa_setup.qr_code,
            provisioning_uri=result.mfa_setup.provisioning_uri,
        ),
    )


@app.post("/auth/login", response_model=LoginResponse)
def login(
    payload: LoginRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    __: None = Depends(rate_limited("login")),
):
    request_id = getattr(request.state, "request_id", "unknown")
    ip_address = client_ip(request)
    user_agent = client_user_agent(request)
    try:
        result = app.state.auth_service.login(payload.email, payload.password, ip_address, user_agent)
    except AuthError as exc:
        logger.warning("login_failed request_id=%s ip=%s error=%s", request_id, ip_address, str(exc))
        if isinstance(exc, (InvalidCredentials, AccountLocked)):
            background_tasks.add_task(
                app.state.fraud_engine.evaluate_login,
                user_id=exc.user_id,
                ip_address=ip_address,
                user_agent=user_agent,
                success=False,
            )
        # Returned rather than raised so the fraud task still runs after the response.
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": _error_detail(exc)},
            background=background_tasks,
        )
    except Exception as exc:
        logger.exception("login_internal_error request_id=%s", request_id)
        raise HTTPException(status_code=500, detail="Login failed") from exc

    if result.session_issued:
        background_tasks.add_task(
            app.state.fraud_engine.evaluate_login,
            user_id=result.user.id,
            ip_address=ip_address,
            user_agent=user_agent,
            success=True,
        )
    return _login_response(result)


@app.post("/auth/verify-mfa", response_model=LoginResponse)
def verify_mfa(
    payload: VerifyMfaRequest,
    request: Request,
    background_tasks: BackgroundTasks,
) -> LoginResponse:
    request_id = getattr(request.state, "request_id", "unknown")
    ip_address = client_ip(request)
    user_agent = client_user_agent(request)
    try:
        result = app.state.auth_service.verify_mfa(payload.temp_token, payload.mfa_code, ip_address, user_agent)
    except AuthError as exc:
        logger.warning("mfa_verification_failed request_id=%s ip=%s error=%s", request_id, ip_address, str(exc))
        raise _to_http_exception(exc) from exc
    except Exception as exc:
        logger.exception("mfa_verification_internal_error request_id=%s", request_id)
        raise HTTPException(status_code=500, detail="MFA verification failed") from exc

    background_tasks.add_task(
        app.state.fraud_engine.evaluate_login,
        user_id=result.user.id,
        ip_address=ip_address,
        user_agent=user_agent,
        success=True,
    )
    return LoginResponse(
        message="MFA verification successful",
        token=result.token,
        user=UserSummary(id=result.user.id, email=result.user.email),
    )


@app.get("/auth/profile", response_model=ProfileResponse)
def get_profile(auth_context: AuthContext = Depends(authenticate_session)) -> ProfileResponse:
    try:
        account = app.state.auth_service.get_profile(auth_context.user_id)
    except AuthError as exc:
        status_code = 404 if not isinstance(exc, InfrastructureError) else exc.status_code
        raise HTTPException(status_code=status_code, detail=_error_detail(exc)) from exc

    return ProfileResponse(
        id=account.id,
        email=account.email,
        phone_number=account.phone_number,
        mfa_enabled=account.mfa_enabled,
        created_at=account.created_at,
        last_login_at=account.last_login_at,
    )


@app.get("/fraud/alerts", response_model=FraudAlertsResponse)
def get_fraud_alerts(
    auth_context: AuthContext = Depends(authenticate_session),
    limit: int = Query(DEFAULT_HISTORY_LIMIT, ge=1, le=100),
) -> FraudAlertsResponse:
    try:
        alerts = app.state.fraud_engine.get_fraud_alerts(auth_context.user_id, limit=limit)
    except InfrastructureError as exc:
        logger.error("fraud_alerts_db_error user_id=%s error=%s", auth_context.user_id, str(exc))
        raise HTTPException(status_code=500, detail="Failed to fetch fraud alerts") from exc
    return FraudAlertsResponse(alerts=alerts)


@app.get("/fraud/login-history", response_model=LoginHistoryResponse)
def get_login_history(
    auth_context: AuthContext = Depends(authenticate_session),
    limit: int = Query(DEFAULT_HISTORY_LIMIT, ge=1, le=100),
) -> LoginHistoryResponse:
    try:
        history = app.state.fraud_engine.get_login_history(auth_context.user_id, limit=limit)
    except InfrastructureError as exc:
        logger.error("login_history_db_error user_id=%s error=%s", auth_context.user_id, str(exc))
        raise HTTPException(status_code=500, detail="Failed to fetch login history") from exc
    return LoginHistoryResponse(history=history)
