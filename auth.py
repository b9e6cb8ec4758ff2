"""
Bearer token verification.

Tokens are HS256 JWTs signed with JWT_SECRET by the account service; `sub`
is the user's id and `exp`, when present, a unix timestamp.
"""
import base64
import hashlib
import hmac
import json
import time
from typing import Any, Dict, Optional

from fastapi import Depends
from fastapi.security import OAuth2PasswordBearer
from pymongo.database import Database

from config import JWT_SECRET
from database import get_db, parse_object_id
from errors import ForbiddenError, UnauthorizedError


def b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode()


def _unb64url(segment: str) -> bytes:
    return base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4))


def sign(signing_input: str, secret: str) -> str:
    """HS256 signature segment for "<header>.<payload>"."""
    return b64url(hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest())


def decode_token(token: str, secret: str = JWT_SECRET) -> Dict[str, Any]:
    """Claims of a token. Raises ValueError when it is malformed, forged or expired."""
    try:
        header_b64, claims_b64, signature = token.split(".")
        header = json.loads(_unb64url(header_b64))
        claims = json.loads(_unb64url(claims_b64))
    except (ValueError, TypeError) as e:
        raise ValueError("Malformed token") from e
    if not isinstance(header, dict) or header.get("alg") != "HS256":
        raise ValueError("Unsupported token algorithm")
    if not hmac.compare_digest(sign(f"{header_b64}.{claims_b64}", secret).encode(), signature.encode()):
        raise ValueError("Invalid signature")
    if not isinstance(claims, dict):
        raise ValueError("Invalid claims")
    exp = claims.get("exp")
    if exp is not None and (not isinstance(exp, (int, float)) or time.time() > exp):
        raise ValueError("Token expired")
    return claims


oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login", auto_error=False)


# Dependencies
def get_current_user(token: Optional[str] = Depends(oauth2_scheme), db: Database = Depends(get_db)) -> dict:
    if not token:
        raise UnauthorizedError("Not authorized, no token")
    try:
        claims = decode_token(token)
    except ValueError:
        raise UnauthorizedError("Not authorized, token failed")
    user_id = parse_object_id(claims.get("sub"))
    if user_id is None:
        raise UnauthorizedError("Not authorized, token failed")
    user = db["user"].find_one({"_id": user_id}, {"password_hash": 0})
    if not user:
        raise UnauthorizedError("Not authorized, user not found")
    return user


def require_admin(current_user: dict = Depends(get_current_user)) -> dict:
    if not current_user.get("is_admin"):
        raise ForbiddenError("Not authorized as an admin")
    return current_user
