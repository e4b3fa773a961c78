"""
Session tokens and password hashes.

Tokens are compact HS256 JWTs (header.payload.signature) signed with the
shared JWT_SECRET. The payload carries the user id in ``sub`` and the
display name in ``username``; a verified token is trusted as-is.
"""
from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
from dataclasses import dataclass
from typing import Optional

from huddle.errors import Unauthorized

DEFAULT_TTL_SECONDS = 60 * 60  # 1 hour
PBKDF2_ROUNDS = 200_000


@dataclass(frozen=True)
class SessionClaims:
    user_id: str
    username: str


# =========================
# Password hashing (PBKDF2)
# =========================
def hash_password(password: str, salt: Optional[str] = None) -> str:
    if salt is None:
        salt = secrets.token_hex(16)
    dk = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), PBKDF2_ROUNDS)
    return f"pbkdf2_sha256${PBKDF2_ROUNDS}${salt}${dk.hex()}"


def verify_password(password: str, stored: str) -> bool:
    try:
        _, _, salt, _ = stored.split("$", 3)
    except ValueError:
        return False
    return hmac.compare_digest(hash_password(password, salt), stored)


# =========================
# Minimal JWT HS256
# =========================
def b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64urldecode(data: str) -> bytes:
    pad = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode((data + pad).encode("ascii"))


def _signature(secret: str, msg: bytes) -> str:
    return b64url(hmac.new(secret.encode(), msg, hashlib.sha256).digest())


def sign_token(
    claims: SessionClaims,
    secret: str,
    ttl_seconds: int = DEFAULT_TTL_SECONDS,
    now: Optional[int] = None,
) -> str:
    issued_at = int(time.time()) if now is None else int(now)
    header = {"alg": "HS256", "typ": "JWT"}
    payload = {
        "sub": claims.user_id,
        "username": claims.username,
        "iat": issued_at,
        "exp": issued_at + int(ttl_seconds),
    }
    header_b64 = b64url(json.dumps(header, separators=(",", ":")).encode())
    payload_b64 = b64url(json.dumps(payload, separators=(",", ":")).encode())
    msg = f"{header_b64}.{payload_b64}".encode("ascii")
    return f"{header_b64}.{payload_b64}.{_signature(secret, msg)}"


def verify_token(token: str, secret: str, now: Optional[int] = None) -> SessionClaims:
    try:
        header_b64, payload_b64, sig_b64 = (token or "").strip().split(".", 2)
    except ValueError:
        raise Unauthorized("Invalid token")

    try:
        msg = f"{header_b64}.{payload_b64}".encode("ascii")
    except UnicodeEncodeError:
        raise Unauthorized("Invalid token")
    if not hmac.compare_digest(_signature(secret, msg), sig_b64):
        raise Unauthorized("Bad signature")

    try:
        payload = json.loads(b64urldecode(payload_b64))
    except ValueError:
        raise Unauthorized("Invalid token")
    if not isinstance(payload, dict):
        raise Unauthorized("Invalid token")

    current = int(time.time()) if now is None else int(now)
    try:
        expires_at = int(payload.get("exp", 0))
    except (TypeError, ValueError):
        raise Unauthorized("Invalid token")
    if expires_at < current:
        raise Unauthorized("Token expired")

    user_id = str(payload.get("sub") or "").strip()
    if not user_id:
        raise Unauthorized("Invalid token")
    return SessionClaims(user_id=user_id, username=str(payload.get("username") or ""))


def extract_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) != 2:
        return None
    scheme, value = parts[0].strip(), parts[1].strip()
    if scheme.lower() != "bearer" or not value:
        return None
    return value
