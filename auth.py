"""
Identity and session: password hashing, JWT sessions, OTP and reset tokens,
Google id-token verification and the FastAPI dependencies that resolve the
acting user.
"""

import hashlib
import secrets
from datetime import timedelta
from typing import Any, Dict, Optional, Tuple

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from google.auth.transport import requests as google_requests
from google.oauth2 import id_token
from jose import JWTError, jwt
from passlib.context import CryptContext
from pymongo.database import Database

import settings
from database import clean, get_db, now
from policy import enforce, require_role

# PBKDF2 avoids bcrypt backend compatibility issues on some platforms.
pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")
bearer_scheme = HTTPBearer(auto_error=False)

OTP_TTL = timedelta(minutes=15)
RESET_TTL = timedelta(minutes=10)
PRIVATE_USER_FIELDS = ("password", "otp", "otp_expiry", "reset_password_token", "reset_password_expire")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, hashed: Optional[str]) -> bool:
    if not hashed:
        return False
    return pwd_context.verify(password, hashed)


def create_access_token(user_id: Any) -> str:
    expires = now() + timedelta(minutes=settings.JWT_EXPIRE_MINUTES)
    return jwt.encode({"sub": str(user_id), "exp": expires}, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def decode_access_token(token: str) -> Optional[str]:
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError:
        return None
    return payload.get("sub")


def issue_otp() -> Tuple[str, str]:
    """Returns (otp, otp_hash)."""
    otp = str(secrets.randbelow(900000) + 100000)
    return otp, pwd_context.hash(otp)


def hash_token(raw: str) -> str:
    return hashlib.sha256(raw.encode()).hexdigest()


def issue_reset_token() -> Tuple[str, str]:
    """Returns (raw token for the link, sha256 stored on the user)."""
    raw = secrets.token_hex(20)
    return raw, hash_token(raw)


def verify_google_token(token: str) -> Dict[str, Any]:
    try:
        info = id_token.verify_oauth2_token(token, google_requests.Request(), settings.GOOGLE_CLIENT_ID or None)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=f"Google token verification failed: {exc}")
    if not info.get("email"):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Google account has no email")
    return {"email": info["email"].lower(), "name": info.get("name") or info["email"], "picture": info.get("picture"), "sub": info.get("sub")}


def public_user(user: Optional[dict]) -> Optional[dict]:
    if not user:
        return user
    return clean({k: v for k, v in user.items() if k not in PRIVATE_USER_FIELDS})


def token_response(user: dict) -> Dict[str, Any]:
    return {"token": create_access_token(user["_id"]), "token_type": "bearer", "user": public_user(user)}


# ----------------------
# Dependencies
# ----------------------
def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: Database = Depends(get_db),
) -> dict:
    token = credentials.credentials if credentials else request.cookies.get(settings.COOKIE_NAME)
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authorized to access this route")
    user_id = decode_access_token(token)
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authorized to access this route")
    try:
        user = db["user"].find_one({"_id": ObjectId(user_id)})
    except InvalidId:
        user = None
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")
    stamp = now()
    db["user"].update_one({"_id": user["_id"]}, {"$set": {"last_active": stamp}})
    user["last_active"] = stamp
    return user


def get_verified_user(user: dict = Depends(get_current_user)) -> dict:
    if not user.get("is_verified"):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Please verify your account first")
    return user


def require_roles(*roles: str):
    def dep(user: dict = Depends(get_verified_user)) -> dict:
        enforce(require_role(user, *roles))
        return user
    return dep
