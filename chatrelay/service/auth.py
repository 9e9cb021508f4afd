from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import json
import secrets
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError

from chatrelay.config import Settings
from chatrelay.logging import get_logger
from chatrelay.service.errors import (
    AuthenticationError,
    ForbiddenError,
    InvalidCredentialsError,
    StoreError,
)
from chatrelay.storage.errors import StorageError
from chatrelay.storage.models import User

logger = get_logger(__name__)


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class CredentialStore(Protocol):
    def get_user_by_email(self, email: str) -> Optional[User]: ...


@dataclass
class Credential:
    """A freshly signed bearer token and its expiry."""

    access_token: str
    user_id: str
    expires_at: datetime
    token_type: str = "bearer"


@dataclass
class AuthContext:
    user_id: str
    token_id: Optional[str] = None
    expires_at: Optional[datetime] = None


class AuthService:
    """Password hashing, HS256 bearer tokens and login against the primary store.

    Verified tokens are trusted for their whole lifetime; the store is not
    consulted again per request, so a removed user stays authenticated until
    ``exp``.
    """

    def __init__(self, store: CredentialStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        self.logger = logger
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._token_ttl = timedelta(minutes=settings.access_token_ttl_minutes)
        # verified against when the email is unknown so both failure paths cost one hash check
        self._decoy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, password_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(password_hash, password)
        except (InvalidHashError, VerificationError):
            return False

    async def login(self, email: str, password: str) -> Credential:
        normalized = normalize_email(email)
        try:
            user = await asyncio.to_thread(self.store.get_user_by_email, normalized)
        except StorageError as exc:
            raise StoreError("user store unavailable") from exc
        if not user:
            self.verify_password(self._decoy_hash, password)
            self.logger.info("login_failed", reason="invalid_credentials")
            raise InvalidCredentialsError("invalid email or password")
        if not self.verify_password(user.password_hash, password):
            self.logger.info("login_failed", user_id=user.id, reason="invalid_credentials")
            raise InvalidCredentialsError("invalid email or password")
        self.logger.info("login_succeeded", user_id=user.id)
        return self.issue_credential(user.id)

    def issue_credential(self, user_id: str) -> Credential:
        now = self._now()
        expires_at = now + self._token_ttl
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user_id,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
            "jti": str(uuid.uuid4()),
            "token_type": "access",
        }
        return Credential(
            access_token=self._encode_jwt(payload),
            user_id=user_id,
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
        )

    def authenticate(self, authorization: Optional[str]) -> AuthContext:
        token = self._extract_bearer(authorization)
        if not token:
            raise AuthenticationError("missing bearer credential")
        payload = self._decode_jwt(token)
        if not payload or payload.get("token_type") != "access" or not payload.get("sub"):
            raise ForbiddenError("invalid or expired credential")
        return AuthContext(
            user_id=str(payload["sub"]),
            token_id=payload.get("jti"),
            expires_at=datetime.fromtimestamp(float(payload["exp"]), tz=timezone.utc),
        )

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        lower = header.lower()
        if not lower.startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip() or None

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(),
                signing_input.encode(),
                hashlib.sha256,
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        valid_aud = False
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        if not valid_aud:
            return None
        exp = payload.get("exp")
        if not exp:
            return None
        try:
            exp_ts = float(exp)
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time():
            return None
        return payload
