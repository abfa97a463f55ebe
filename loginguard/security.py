from __future__ import annotations

from dataclasses import dataclass

from fastapi import HTTPException, Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from loginguard.audit import AuditTrailRecorder
from loginguard.errors import TokenError
from loginguard.tokens import TokenIssuer

USER_AGENT_HEADER_NAME = "User-Agent"
_bearer_header = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class AuthContext:
    user_id: str
    email: str


def client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def client_user_agent(request: Request) -> str | None:
    return request.headers.get(USER_AGENT_HEADER_NAME)


def authenticate_session(
    request: Request,
    bearer_credentials: HTTPAuthorizationCredentials | None = Security(_bearer_header),
) -> AuthContext:
    token_issuer: TokenIssuer | None = getattr(request.app.state, "token_issuer", None)
    audit: AuditTrailRecorder | None = getattr(request.app.state, "audit", None)
    if token_issuer is None or audit is None:
        raise HTTPException(status_code=500, detail="Authentication is not configured.")

    ip_address = client_ip(request)
    user_agent = client_user_agent(request)

    if (
        bearer_credentials is None
        or bearer_credentials.scheme.lower() != "bearer"
        or not bearer_credentials.credentials
    ):
        audit.record(None, "AUTH_FAILED", "auth", None, ip_address, user_agent, {"reason": "No token provided"}, 401)
        raise HTTPException(status_code=401, detail="Access token required")

    try:
        claims = token_issuer.verify_session_token(bearer_credentials.credentials)
    except TokenError as exc:
        audit.record(None, "AUTH_FAILED", "auth", None, ip_address, user_agent, {"reason": str(exc)}, 401)
        raise HTTPException(status_code=401, detail=str(exc)) from exc

    audit.record(claims.user_id, "AUTH_SUCCESS", "auth", claims.user_id, ip_address, user_agent)
    auth_context = AuthContext(user_id=claims.user_id, email=claims.email)
    request.state.auth_context = auth_context
    return auth_context
