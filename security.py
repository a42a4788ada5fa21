import os
import secrets
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional, Tuple

from fastapi import HTTPException, status
from jose import jwt, JWTError

# Security settings
SECRET_KEY = os.getenv("SECRET_KEY", "supersecretkeychange")
REFRESH_SECRET_KEY = os.getenv("REFRESH_SECRET_KEY", "supersecretrefreshkeychange")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "15"))
REFRESH_TOKEN_EXPIRE_DAYS = int(os.getenv("REFRESH_TOKEN_EXPIRE_DAYS", "7"))

OTP_TTL_SECONDS = 5 * 60


def _encode(user_id: str, token_type: str, secret: str, expires_delta: timedelta) -> str:
    to_encode = {
        "sub": user_id,
        "type": token_type,
        "exp": datetime.now(timezone.utc) + expires_delta,
    }
    return jwt.encode(to_encode, secret, algorithm=ALGORITHM)


def create_access_token(user_id: str, expires_delta: Optional[timedelta] = None) -> str:
    return _encode(user_id, "access", SECRET_KEY, expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))


def create_refresh_token(user_id: str, expires_delta: Optional[timedelta] = None) -> str:
    return _encode(user_id, "refresh", REFRESH_SECRET_KEY, expires_delta or timedelta(days=REFRESH_TOKEN_EXPIRE_DAYS))


def decode_token(token: str, token_type: str = "access") -> str:
    """Return the user id carried by a token, or raise 401."""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials" if token_type == "access" else "Invalid refresh token",
        headers={"WWW-Authenticate": "Bearer"},
    )
    secret = SECRET_KEY if token_type == "access" else REFRESH_SECRET_KEY
    try:
        payload = jwt.decode(token, secret, algorithms=[ALGORITHM])
    except JWTError:
        raise credentials_exception
    user_id = payload.get("sub")
    if user_id is None or payload.get("type") != token_type:
        raise credentials_exception
    return user_id


def generate_otp() -> str:
    return f"{secrets.randbelow(900000) + 100000}"


class OTPError(Exception):
    pass


class OTPStore:
    """
    In-memory OTP codes keyed by lowercased email.

    Lives in a single process only; a shared cache would replace it when the
    API runs on more than one worker.
    """

    def __init__(self, ttl_seconds: int = OTP_TTL_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._codes: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()

    def issue(self, email: str) -> str:
        otp = generate_otp()
        with self._lock:
            now = self._clock()
            for key in [k for k, (_, expires_at) in self._codes.items() if expires_at < now]:
                del self._codes[key]
            self._codes[email.lower()] = (otp, now + self.ttl_seconds)
        return otp

    def discard(self, email: str) -> None:
        with self._lock:
            self._codes.pop(email.lower(), None)

    def verify(self, email: str, otp: str) -> None:
        """Consume the code for `email`; raises OTPError when it does not check out."""
        key = email.lower()
        with self._lock:
            stored = self._codes.get(key)
            if stored is None:
                raise OTPError("OTP not found or expired")
            code, expires_at = stored
            if self._clock() > expires_at:
                del self._codes[key]
                raise OTPError("OTP expired")
            if not secrets.compare_digest(code.encode(), otp.strip().encode()):
                raise OTPError("Invalid OTP")
            del self._codes[key]

    def __len__(self) -> int:
        return len(self._codes)
