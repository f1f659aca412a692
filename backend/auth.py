import hashlib
import hmac
import json
import time
from typing import Optional
from urllib.parse import quote, unquote

from passlib.context import CryptContext
from pydantic import BaseModel

AUTH_COOKIE = 'auth'
AUTH_COOKIE_DAYS = 7
AUTH_COOKIE_MAX_AGE = AUTH_COOKIE_DAYS * 24 * 3600

pwd_context = CryptContext(schemes=['pbkdf2_sha256'], deprecated='auto')


class AuthInfo(BaseModel):
    role: str = 'user'
    username: Optional[str] = None
    signature: Optional[str] = None
    timestamp: Optional[int] = None


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def generate_signature(data: str, secret: str) -> str:
    return hmac.new(secret.encode('utf-8'), data.encode('utf-8'), hashlib.sha256).hexdigest()


def generate_auth_cookie(username: Optional[str], role: str, secret: Optional[str]) -> str:
    auth_data = {'role': role or 'user'}
    if username and secret:
        auth_data['username'] = username
        auth_data['signature'] = generate_signature(username, secret)
        auth_data['timestamp'] = int(time.time() * 1000)
    return quote(json.dumps(auth_data, ensure_ascii=False, separators=(',', ':')), safe='')


def parse_auth_cookie(raw: Optional[str], secret: Optional[str]) -> Optional[AuthInfo]:
    """Decode the `auth` cookie; returns None unless the signature and age check out."""
    if not raw or not secret:
        return None
    try:
        data = json.loads(unquote(raw))
        info = AuthInfo(**data)
    except (ValueError, TypeError):
        return None
    if not info.username or not info.signature:
        return None
    expected = generate_signature(info.username, secret)
    if not hmac.compare_digest(expected, info.signature):
        return None
    if info.timestamp is not None:
        age = time.time() - info.timestamp / 1000.0
        if age > AUTH_COOKIE_MAX_AGE:
            return None
    return info


def username_from_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(' ')
    if scheme.lower() != 'bearer' or not token.strip():
        return None
    return unquote(token.strip())
