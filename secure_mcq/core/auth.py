from datetime import datetime, timedelta, timezone
from typing import List, Optional
import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from passlib.context import CryptContext
from pydantic import BaseModel
from secure_mcq.core.config import settings

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")
bearer = HTTPBearer(auto_error=False)


class TokenData(BaseModel):
    sub: str
    roles: List[str]
    session_token: Optional[str] = None


def hash_secret(secret: str) -> str:
    return pwd_context.hash(secret)


def verify_secret(secret: str, stored_hash: str) -> bool:
    if not stored_hash:
        # assessments without a passcode accept any input
        return True
    try:
        return pwd_context.verify(secret or "", stored_hash)
    except (ValueError, TypeError):
        return False


def create_token(user_id: str, roles: List[str], ttl_seconds: int, session_token: Optional[str] = None) -> str:
    now = datetime.now(timezone.utc)
    payload = {"sub": user_id, "roles": roles, "iat": int(now.timestamp()), "exp": int((now + timedelta(seconds=ttl_seconds)).timestamp())}
    if session_token:
        payload["session_token"] = session_token
    return jwt.encode(payload, settings.SECRET_KEY.get_secret_value(), algorithm=settings.ALGORITHM)


def create_session_capability(session_token: str, student_id: str, remaining_seconds: int) -> str:
    ttl = max(300, remaining_seconds + settings.CAPABILITY_GRACE_SECONDS)
    return create_token(student_id, ["client"], ttl, session_token=session_token)


def get_current_user(creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer)) -> TokenData:
    if creds is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="unauthorized")
    try:
        payload = jwt.decode(creds.credentials, settings.SECRET_KEY.get_secret_value(), algorithms=[settings.ALGORITHM])
        return TokenData(sub=payload["sub"], roles=payload.get("roles", []), session_token=payload.get("session_token"))
    except (jwt.PyJWTError, KeyError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="unauthorized")


def require_roles(*required: str):
    def checker(user: TokenData = Depends(get_current_user)):
        if not set(user.roles).intersection(required):
            raise HTTPException(status_code=403, detail="forbidden")
        return user
    return checker


def can_act_on_session(caller: TokenData, session_token: str) -> bool:
    return "client" in caller.roles and bool(session_token) and caller.session_token == session_token


def session_capability(token: str, user: TokenData = Depends(get_current_user)) -> TokenData:
    if not can_act_on_session(user, token):
        raise HTTPException(status_code=403, detail="session_forbidden")
    return user


def verify_admin_password(password: str) -> bool:
    if settings.ADMIN_PASSWORD_HASH:
        return verify_secret(password, settings.ADMIN_PASSWORD_HASH)
    return bool(password) and password == settings.ADMIN_PASSWORD.get_secret_value()
