import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Cookie, Depends, Header
from jose import ExpiredSignatureError, JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel
from pymongo.database import Database

from database import get_db, oid
from errors import AuthenticationError, AuthorizationError
from settings import get_settings

logger = logging.getLogger(__name__)

TOKEN_COOKIE = "token"

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    if not password_hash:
        return False
    return pwd_context.verify(password, password_hash)


def create_token(data: dict, expires_minutes: Optional[int] = None) -> str:
    settings = get_settings()
    if expires_minutes is None:
        expires_minutes = settings.JWT_EXPIRE_MINUTES
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + timedelta(minutes=expires_minutes)
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def token_for_user(user: dict) -> str:
    return create_token({
        "id": str(user["_id"]),
        "email": user["email"],
        "name": user.get("name"),
        "role": user.get("role", "user"),
    })


class AuthUser(BaseModel):
    id: str
    email: str
    name: str
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def extract_token(authorization: Optional[str], cookie_token: Optional[str]) -> Optional[str]:
    if authorization:
        parts = authorization.split()
        if len(parts) != 2 or parts[0].lower() != "bearer":
            raise AuthenticationError("Invalid Authorization header")
        return parts[1]
    if cookie_token:
        return cookie_token.strip()
    return None


def resolve_user(db: Database, token: str) -> AuthUser:
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except ExpiredSignatureError:
        raise AuthenticationError("Authentication token expired")
    except JWTError:
        raise AuthenticationError("Invalid authentication token")

    _id = oid(payload.get("id"))
    if not _id:
        raise AuthenticationError("Invalid token structure")
    # role and active flag come from the stored account, not the token
    user = db["user"].find_one({"_id": _id}, {"password_hash": 0, "cart": 0})
    if not user:
        raise AuthenticationError("User not found")
    if not user.get("is_active", True):
        raise AuthenticationError("User account is inactive")
    return AuthUser(
        id=str(user["_id"]),
        email=user["email"],
        name=user.get("name") or "User",
        role=user.get("role", "user"),
    )


def get_current_user(
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Cookie(None),
    db: Database = Depends(get_db),
) -> AuthUser:
    raw = extract_token(authorization, token)
    if not raw:
        raise AuthenticationError("Access denied. No authentication token provided.")
    return resolve_user(db, raw)


def get_optional_user(
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Cookie(None),
    db: Database = Depends(get_db),
) -> Optional[AuthUser]:
    try:
        raw = extract_token(authorization, token)
        if not raw:
            return None
        return resolve_user(db, raw)
    except AuthenticationError as e:
        # a bad token on a public route means the caller is treated as a guest
        logger.debug("Ignoring credentials on optional-auth route: %s", e.detail)
        return None


def require_role(*roles: str):
    def dependency(user: AuthUser = Depends(get_current_user)) -> AuthUser:
        if user.role not in roles:
            logger.warning("User %s with role %s denied (requires %s)", user.id, user.role, ", ".join(roles))
            raise AuthorizationError(f"Access denied. Required role: {', '.join(roles)}")
        return user

    return dependency


require_admin = require_role("admin")
