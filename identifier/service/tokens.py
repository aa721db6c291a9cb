from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, List, Optional

from identifier.config import Settings
from identifier.logging import get_logger
from identifier.service.errors import InvalidOrExpiredTokenError, SigningError

logger = get_logger(__name__)

TOKEN_TYPE = "Bearer"


class OpaqueTokenGenerator:
    """Random secrets for refresh and reset tokens. Only the hash is stored."""

    def __init__(self, nbytes: int = 32) -> None:
        self.nbytes = nbytes

    def generate(self) -> tuple[str, str]:
        secret = secrets.token_hex(self.nbytes)
        return secret, self.hash(secret)

    @staticmethod
    def hash(secret: str) -> str:
        return hashlib.sha256(secret.encode("utf-8")).hexdigest()


@dataclass
class AccessToken:
    token: str
    expires_in: int
    expires_at: datetime
    jti: str


@dataclass
class AccessClaims:
    sub: str
    email: str
    roles: List[str] = field(default_factory=list)
    permissions: List[str] = field(default_factory=list)
    iat: int = 0
    exp: int = 0
    jti: Optional[str] = None


class AccessTokenIssuer:
    """HS256 access tokens carrying subject, email, roles and permissions."""

    def __init__(self, settings: Settings, *, leeway_seconds: int = 30) -> None:
        self._secret = settings.jwt_secret.encode()
        self.issuer = settings.jwt_issuer
        self.audience = settings.jwt_audience
        self.ttl_seconds = settings.access_token_ttl_seconds
        self.leeway_seconds = leeway_seconds

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    def _encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        try:
            header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
            payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        except (TypeError, ValueError) as exc:
            logger.error("jwt_encode_failed", error=str(exc))
            raise SigningError("access token could not be signed") from exc
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def issue(
        self,
        external_user_id: str,
        email: str,
        roles: List[str],
        permissions: List[str],
    ) -> AccessToken:
        now = int(time.time())
        exp = now + self.ttl_seconds
        jti = str(uuid.uuid4())
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": external_user_id,
            "email": email,
            "roles": list(roles),
            "permissions": list(permissions),
            "token_type": "access",
            "jti": jti,
            "iat": now,
            "nbf": now,
            "exp": exp,
        }
        return AccessToken(
            token=self._encode(payload),
            expires_in=self.ttl_seconds,
            expires_at=datetime.fromtimestamp(exp, tz=timezone.utc),
            jti=jti,
        )

    def _decode(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        # reject anything but the algorithm we sign with
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None
        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        return payload if isinstance(payload, dict) else None

    def verify(self, token: str) -> AccessClaims:
        payload = self._decode(token)
        if payload is None:
            raise InvalidOrExpiredTokenError()
        if payload.get("iss") != self.issuer or payload.get("token_type") != "access":
            raise InvalidOrExpiredTokenError()
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise InvalidOrExpiredTokenError()
        try:
            exp = float(payload["exp"])
            nbf = float(payload.get("nbf", 0))
        except (KeyError, TypeError, ValueError):
            raise InvalidOrExpiredTokenError()
        now = time.time()
        if exp <= now - self.leeway_seconds or nbf > now + self.leeway_seconds:
            raise InvalidOrExpiredTokenError()
        if not payload.get("sub"):
            raise InvalidOrExpiredTokenError()
        return AccessClaims(
            sub=str(payload["sub"]),
            email=str(payload.get("email", "")),
            roles=list(payload.get("roles") or []),
            permissions=list(payload.get("permissions") or []),
            iat=int(payload.get("iat", 0)),
            exp=int(exp),
            jti=payload.get("jti"),
        )


def extract_bearer(authorization: Optional[str]) -> Optional[str]:
    """Return the token from an ``Authorization: Bearer`` header value."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()
