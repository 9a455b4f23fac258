from fastapi import APIRouter, Request
from pydantic import BaseModel
from secure_mcq.core import cache
from secure_mcq.core.auth import create_token, verify_admin_password
from secure_mcq.core.config import settings
from secure_mcq.core.errors import ExamError

router = APIRouter()


class AdminLogin(BaseModel):
    username: str = "admin"
    password: str


def client_address(request: Request) -> str:
    peer = request.client.host if request.client else "unknown"
    forwarded = request.headers.get("x-forwarded-for", "")
    if forwarded and peer in settings.TRUSTED_PROXIES:
        return forwarded.split(",")[0].strip() or peer
    return peer


def enforce_rate_limit(scope: str, request: Request) -> None:
    allowed, _ = cache.check_rate_limit(scope, client_address(request), settings.LOGIN_RATE_LIMIT, settings.LOGIN_RATE_WINDOW_SECONDS)
    if not allowed:
        raise ExamError("too_many_requests", 429, retryAfterSeconds=settings.LOGIN_RATE_WINDOW_SECONDS)


@router.post("/admin-login")
def admin_login(payload: AdminLogin, request: Request):
    enforce_rate_limit("admin-login", request)
    if not verify_admin_password(payload.password):
        raise ExamError("invalid_credentials", 401)
    ttl = settings.ADMIN_TOKEN_TTL_MINUTES * 60
    token = create_token(payload.username or "admin", ["admin"], ttl)
    return {"access_token": token, "token_type": "bearer", "roles": ["admin"], "expires_in": ttl}
