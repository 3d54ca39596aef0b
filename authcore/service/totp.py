from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
from datetime import datetime
from typing import Optional
from urllib.parse import quote, urlencode

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.primitives import SecureRandom

logger = get_logger(__name__)

SECRET_BYTES = 20


def _decode_secret(secret: str) -> Optional[bytes]:
    cleaned = "".join((secret or "").split()).upper().rstrip("=")
    if not cleaned:
        return None
    padded = cleaned + "=" * ((8 - len(cleaned) % 8) % 8)
    try:
        return base64.b32decode(padded, casefold=False)
    except (binascii.Error, ValueError):
        return None


class TwoFactorEngine:
    """RFC 6238 time-based one-time passwords (HMAC-SHA1).

    Codes are accepted for the current time step and ``skew_steps`` steps on
    either side. There is no replay tracking: a code stays valid for as long
    as its window lasts.
    """

    def __init__(self, settings: Settings, random: SecureRandom) -> None:
        self.random = random
        self.issuer = settings.totp_issuer
        self.digits = settings.totp_digits
        self.period = settings.totp_period_seconds
        self.skew_steps = settings.totp_skew_steps

    def generate_secret(self) -> str:
        raw = self.random.token_bytes(SECRET_BYTES)
        return base64.b32encode(raw).decode("ascii").rstrip("=")

    def provisioning_uri(
        self, email: str, secret: str, issuer: Optional[str] = None
    ) -> str:
        issuer = issuer or self.issuer
        label = quote(f"{issuer}:{email}", safe="@:")
        query = urlencode(
            {
                "secret": secret,
                "issuer": issuer,
                "algorithm": "SHA1",
                "digits": self.digits,
                "period": self.period,
            },
            quote_via=quote,
        )
        return f"otpauth://totp/{label}?{query}"

    @staticmethod
    def format_secret_for_display(secret: str) -> str:
        cleaned = "".join((secret or "").split()).upper()
        return " ".join(cleaned[i : i + 4] for i in range(0, len(cleaned), 4))

    def _code_for_counter(self, key: bytes, counter: int) -> str:
        digest = hmac.new(key, counter.to_bytes(8, "big"), hashlib.sha1).digest()
        offset = digest[-1] & 0x0F
        code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
            10**self.digits
        )
        return str(code_int).zfill(self.digits)

    def _counter(self, at: datetime) -> int:
        return int(at.timestamp()) // self.period

    def generate_code(self, secret: str, at: datetime) -> str:
        key = _decode_secret(secret)
        if key is None:
            raise ValueError("TOTP secret is not valid base32")
        return self._code_for_counter(key, self._counter(at))

    def validate_code(self, secret: str, code: str, now: datetime) -> bool:
        if not isinstance(code, str):
            return False
        candidate = "".join(code.split())
        if len(candidate) != self.digits or not candidate.isascii() or not candidate.isdigit():
            return False
        key = _decode_secret(secret)
        if key is None:
            logger.warning("totp_secret_invalid")
            return False
        counter = self._counter(now)
        matched = False
        for offset in range(-self.skew_steps, self.skew_steps + 1):
            step = counter + offset
            if step < 0:
                continue
            # compare every step so timing does not reveal which one matched
            if hmac.compare_digest(self._code_for_counter(key, step), candidate):
                matched = True
        return matched
