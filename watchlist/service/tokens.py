from __future__ import annotations

import base64
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Optional

from watchlist.config import Settings
from watchlist.logging import get_logger
from watchlist.service.credentials import CredentialStore
from watchlist.storage.models import IdentitySnapshot, User

logger = get_logger(__name__)

_REQUIRED_CLAIMS = ("sub", "id", "username", "role", "iat", "exp")


class TokenFailure(str, Enum):
    """Why a token was rejected; only ever shown to clients as a refresh hint."""

    EXPIRED = "token_expired"
    INVALID = "token_invalid"


@dataclass(frozen=True)
class UserClaims:
    id: int
    username: str
    display_name: Optional[str]
    role: str
    created_at: Optional[str]
    issued_at: datetime
    expires_at: datetime

    def snapshot(self) -> IdentitySnapshot:
        return IdentitySnapshot(
            id=self.id,
            username=self.username,
            display_name=self.display_name,
            role=self.role,
        )


@dataclass(frozen=True)
class IssuedToken:
    token: str
    expires_at: datetime


@dataclass(frozen=True)
class TokenCheck:
    claims: Optional[UserClaims] = None
    reason: Optional[TokenFailure] = None

    @property
    def ok(self) -> bool:
        return self.claims is not None


class TokenService:
    """Issues and verifies HS256 identity tokens.

    Expiry uses whole-second NumericDates: a token is valid while
    ``now < exp`` and rejected from ``exp`` onwards, with no leeway.
    """

    def __init__(
        self,
        settings: Settings,
        credentials: CredentialStore,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings
        self.credentials = credentials
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.ttl = timedelta(days=settings.token_ttl_days)

    def _now(self) -> datetime:
        return self._clock()

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(
            self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
        ).digest()
        return self._encode_segment(digest)

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def issue(self, user: User) -> IssuedToken:
        issued = int(self._now().timestamp())
        expires = issued + int(self.ttl.total_seconds())
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": str(user.id),
            "id": user.id,
            "username": user.username,
            "display_name": user.display_name,
            "role": user.role,
            "created_at": user.created_at.isoformat() if user.created_at else None,
            "iat": issued,
            "exp": expires,
        }
        return IssuedToken(
            token=self._encode_jwt(payload),
            expires_at=datetime.fromtimestamp(expires, tz=timezone.utc),
        )

    def _reject(self, reason: str, failure: TokenFailure = TokenFailure.INVALID) -> TokenCheck:
        logger.info("token_rejected", reason=reason)
        return TokenCheck(reason=failure)

    def inspect(self, token: Optional[str]) -> TokenCheck:
        """Verify a token and say why it failed, for callers that need the distinction."""
        if not token or not isinstance(token, str):
            return self._reject("missing")
        parts = token.split(".")
        if len(parts) != 3:
            return self._reject("malformed")
        header_b64, payload_b64, sig_b64 = parts

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            return self._reject("malformed_header")
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            return self._reject("bad_algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            return self._reject("bad_signature")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError):
            return self._reject("malformed_payload")
        if not isinstance(payload, dict):
            return self._reject("malformed_payload")
        if payload.get("iss") != self.settings.jwt_issuer:
            return self._reject("wrong_issuer")
        if payload.get("aud") != self.settings.jwt_audience:
            return self._reject("wrong_audience")
        if any(payload.get(name) is None for name in _REQUIRED_CLAIMS):
            return self._reject("missing_claims")

        try:
            user_id = int(payload["id"])
            issued = int(payload["iat"])
            expires = int(payload["exp"])
        except (TypeError, ValueError):
            return self._reject("missing_claims")
        if str(user_id) != str(payload["sub"]):
            return self._reject("subject_mismatch")

        if self._now().timestamp() >= expires:
            return self._reject("expired", TokenFailure.EXPIRED)

        return TokenCheck(
            claims=UserClaims(
                id=user_id,
                username=str(payload["username"]),
                display_name=payload.get("display_name"),
                role=str(payload["role"]),
                created_at=payload.get("created_at"),
                issued_at=datetime.fromtimestamp(issued, tz=timezone.utc),
                expires_at=datetime.fromtimestamp(expires, tz=timezone.utc),
            )
        )

    def verify(self, token: Optional[str]) -> Optional[UserClaims]:
        return self.inspect(token).claims

    def refresh(self, token: Optional[str]) -> Optional[IssuedToken]:
        """Re-issue from a fresh store read so role/display-name changes are picked up."""
        check = self.inspect(token)
        if not check.ok:
            return None
        user = self.credentials.find_by_id(check.claims.id)
        if user is None or user.username != check.claims.username:
            logger.info("token_refresh_user_missing", user_id=check.claims.id)
            return None
        logger.info("token_refreshed", user_id=user.id)
        return self.issue(user)
