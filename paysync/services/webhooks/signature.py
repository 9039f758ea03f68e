"""Webhook authenticity check (HMAC-SHA512 over the raw body, as Paystack signs)."""

import hashlib
import hmac
from typing import Mapping

from paysync.common.errors import AuthError, ConfigError


SIGNATURE_HEADERS = ("x-paystack-signature", "x-webhook-signature")


class HmacSignatureVerifier:
    def __init__(self, secret: str) -> None:
        if not secret:
            raise ConfigError("webhook secret is not configured")
        self._secret = secret.encode("utf-8")

    def sign(self, body: bytes) -> str:
        return hmac.new(self._secret, body, hashlib.sha512).hexdigest()

    def verify(self, body: bytes, headers: Mapping[str, str]) -> None:
        lowered = {key.lower(): value for key, value in headers.items()}
        provided = next((lowered[name] for name in SIGNATURE_HEADERS if name in lowered), None)
        if not provided:
            raise AuthError("webhook signature header missing")
        if not hmac.compare_digest(self.sign(body), provided):
            raise AuthError("webhook signature mismatch")
