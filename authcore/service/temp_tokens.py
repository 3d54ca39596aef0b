from __future__ import annotations

import base64
from datetime import datetime, timedelta
from typing import Iterable, Optional

from cryptography.fernet import Fernet, InvalidToken, MultiFernet
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from pydantic import AwareDatetime, BaseModel, ConfigDict, ValidationError

from authcore.config import Settings
from authcore.logging import get_logger

logger = get_logger(__name__)

TWO_FACTOR_PURPOSE = "two-factor-login"


class TempTokenPayload(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    account_id: str
    issued_at: AwareDatetime


def derive_fernet_key(secret: str, purpose: str) -> bytes:
    """Derive a purpose-bound Fernet key so one secret can serve many uses."""
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=None,
        info=f"authcore:{purpose}".encode("utf-8"),
    )
    return base64.urlsafe_b64encode(hkdf.derive(secret.encode("utf-8")))


class TempTokenProtector:
    """Seals the short-lived token that bridges password and 2FA steps.

    The token is stateless: it is valid for any number of opens until its
    TTL passes. It carries no secrets beyond the account id.
    """

    def __init__(
        self,
        secret: str,
        *,
        ttl: timedelta,
        previous_secrets: Iterable[str] = (),
        purpose: str = TWO_FACTOR_PURPOSE,
        clock_skew: timedelta = timedelta(0),
    ) -> None:
        keys = [Fernet(derive_fernet_key(secret, purpose))]
        keys.extend(Fernet(derive_fernet_key(s, purpose)) for s in previous_secrets)
        self._fernet = MultiFernet(keys)
        self.ttl = ttl
        self.purpose = purpose
        self.clock_skew = clock_skew

    @classmethod
    def from_settings(cls, settings: Settings) -> "TempTokenProtector":
        return cls(
            settings.temp_token_secret,
            ttl=timedelta(minutes=settings.temp_token_ttl_minutes),
            previous_secrets=settings.temp_token_previous_secrets,
            clock_skew=timedelta(seconds=settings.temp_token_clock_skew_seconds),
        )

    @property
    def ttl_seconds(self) -> int:
        return int(self.ttl.total_seconds())

    def seal(self, account_id: str, now: datetime) -> str:
        payload = TempTokenPayload(account_id=account_id, issued_at=now)
        token = self._fernet.encrypt_at_time(
            payload.model_dump_json().encode("utf-8"), int(now.timestamp())
        )
        return token.decode("ascii")

    def open(
        self, token: str, now: datetime, ttl: Optional[timedelta] = None
    ) -> Optional[str]:
        """Return the sealed account id, or None for any invalid token."""
        if not token or not isinstance(token, str):
            return None
        try:
            raw = self._fernet.decrypt(token.encode("ascii"))
        except (InvalidToken, UnicodeEncodeError):
            logger.info("temp_token_rejected", reason="integrity")
            return None
        try:
            payload = TempTokenPayload.model_validate_json(raw)
        except ValidationError:
            logger.warning("temp_token_rejected", reason="payload")
            return None
        window = ttl if ttl is not None else self.ttl
        if payload.issued_at > now + self.clock_skew:
            logger.warning(
                "temp_token_rejected", reason="issued_in_future", account_id=payload.account_id
            )
            return None
        if now - payload.issued_at > window:
            logger.info("temp_token_rejected", reason="expired", account_id=payload.account_id)
            return None
        return payload.account_id
