from __future__ import annotations

import hashlib
import hmac
from collections.abc import Mapping

# Header names different Mercado Pago integrations and proxies have used.
SIGNATURE_HEADERS = (
    "x-hub-signature-256",
    "x-hub-signature",
    "x-signature",
    "x-mp-signature",
    "x-webhook-signature",
)


class SignatureError(Exception):
    def __init__(self, code: str, detail: str) -> None:
        super().__init__(detail)
        self.code = code
        self.detail = detail


def find_signature(headers: Mapping[str, str]) -> str | None:
    lowered = {key.lower(): value for key, value in headers.items()}
    for name in SIGNATURE_HEADERS:
        value = lowered.get(name)
        if value and value.strip():
            return value.strip()
    return None


def parse_signature(value: str) -> str:
    """
    Hex digest from one of the accepted header formats.

    `<hex>`, `sha256=<hex>` and `ts=<n>,v1=<hex>` are recognised.
    """
    value = value.strip()
    if "," in value or value.startswith(("v1=", "ts=")):
        parts = dict(
            part.strip().split("=", 1) for part in value.split(",") if "=" in part
        )
        return parts.get("v1", "").strip().lower()
    if value.lower().startswith("sha256="):
        return value.split("=", 1)[1].strip().lower()
    return value.lower()


def compute_signature(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_webhook_signature(secret: str, body: bytes, headers: Mapping[str, str]) -> None:
    """Raise SignatureError unless `headers` carry an HMAC-SHA256 of `body` under `secret`."""
    header_value = find_signature(headers)
    if not header_value:
        raise SignatureError("missing_signature", "webhook signature header is required")
    provided = parse_signature(header_value)
    expected = compute_signature(secret, body)
    if not provided or not hmac.compare_digest(expected.encode(), provided.encode("utf-8")):
        raise SignatureError("invalid_signature", "webhook signature does not match")


__all__ = [
    "SIGNATURE_HEADERS",
    "SignatureError",
    "compute_signature",
    "find_signature",
    "parse_signature",
    "verify_webhook_signature",
]
