from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional, Tuple

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.primitives import SecureRandom
from authcore.storage.common import AccountRepository
from authcore.storage.models import Account, RefreshSession

logger = get_logger(__name__)

REFRESH_TOKEN_BYTES = 64
ACCESS_TOKEN_TYPE = "access"


def hash_opaque_token(token: str) -> str:
    """SHA-256 digest used to look up high-entropy bearer tokens at rest."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    refresh_expires_at: datetime


class TokenService:
    """Signed access tokens and rotatable refresh sessions."""

    def __init__(
        self, store: AccountRepository, settings: Settings, random: SecureRandom
    ) -> None:
        self.store = store
        self.random = random
        self.issuer = settings.jwt_issuer
        self.audience = settings.jwt_audience
        self.access_ttl = timedelta(minutes=settings.access_token_ttl_minutes)
        self.refresh_ttl = timedelta(days=settings.refresh_token_ttl_days)
        self._signing_key = settings.jwt_secret.encode("utf-8")
        self._verification_keys = [self._signing_key] + [
            s.encode("utf-8") for s in settings.jwt_previous_secrets
        ]

    # access tokens
    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, key: bytes, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(key, signing_input.encode("utf-8"), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(self._signing_key, signing_input)}"

    def issue_access_token(self, account: Account, now: datetime) -> str:
        issued_at = int(now.timestamp())
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": account.id,
            "role": account.role,
            "email": account.email,
            "token_type": ACCESS_TOKEN_TYPE,
            "jti": str(uuid.uuid4()),
            "iat": issued_at,
            "exp": issued_at + int(self.access_ttl.total_seconds()),
        }
        return self._encode_jwt(payload)

    def decode_access_token(self, token: str, now: datetime) -> Optional[dict[str, Any]]:
        if not token or not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # pin the algorithm so a forged header cannot pick another one
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        # compare_digest only accepts ASCII str
        if not sig_b64.isascii():
            return None
        signing_input = f"{header_b64}.{payload_b64}"
        if not any(
            hmac.compare_digest(self._sign(key, signing_input), sig_b64)
            for key in self._verification_keys
        ):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            return None
        if payload.get("token_type") != ACCESS_TOKEN_TYPE or not payload.get("sub"):
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= now.timestamp():
            return None
        return payload

    # refresh sessions
    def _new_refresh(self, account_id: str, now: datetime) -> Tuple[str, RefreshSession]:
        token = self.random.token_urlsafe(REFRESH_TOKEN_BYTES)
        session = RefreshSession.new(
            account_id, hash_opaque_token(token), now, self.refresh_ttl
        )
        return token, session

    def issue_refresh_session(
        self, account_id: str, now: datetime
    ) -> Tuple[str, RefreshSession]:
        token, session = self._new_refresh(account_id, now)
        stored = self.store.create_refresh_session(session)
        return token, stored

    def _pair(
        self,
        account: Account,
        refresh_token: str,
        session: RefreshSession,
        now: datetime,
    ) -> TokenPair:
        return TokenPair(
            access_token=self.issue_access_token(account, now),
            refresh_token=refresh_token,
            expires_in=int(self.access_ttl.total_seconds()),
            refresh_expires_at=session.expires_at,
        )

    def issue_pair(self, account: Account, now: datetime) -> TokenPair:
        refresh_token, session = self.issue_refresh_session(account.id, now)
        logger.info("refresh_session_created", account_id=account.id, session_id=session.id)
        return self._pair(account, refresh_token, session, now)

    def rotate(self, old_token: str, now: datetime) -> Optional[TokenPair]:
        if not old_token or not isinstance(old_token, str):
            return None
        old_hash = hash_opaque_token(old_token)
        current = self.store.get_refresh_session(old_hash)
        if current is None or not current.is_active(now):
            logger.info(
                "refresh_rejected",
                reason="missing" if current is None else "inactive",
            )
            return None
        account = self.store.get_account(current.account_id)
        if account is None:
            logger.warning("refresh_rejected", reason="account_missing", session_id=current.id)
            return None
        new_token, successor = self._new_refresh(account.id, now)
        rotated = self.store.rotate_refresh_session(old_hash, successor, now)
        if rotated is None:
            # another request rotated or revoked it between read and lock
            logger.info("refresh_rejected", reason="concurrent_rotation", session_id=current.id)
            return None
        logger.info(
            "refresh_session_rotated",
            account_id=account.id,
            previous_session_id=current.id,
            session_id=rotated.id,
        )
        return self._pair(account, new_token, rotated, now)

    def revoke(self, token: str, now: datetime) -> bool:
        if not token or not isinstance(token, str):
            return False
        revoked = self.store.revoke_refresh_session(hash_opaque_token(token), now)
        if revoked:
            logger.info("refresh_session_revoked")
        return revoked

    def revoke_all(self, account_id: str, now: datetime) -> int:
        count = self.store.revoke_account_sessions(account_id, now)
        logger.info("refresh_sessions_revoked", account_id=account_id, count=count)
        return count
