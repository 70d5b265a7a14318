"""
Payer block for Mercado Pago PIX charges.

Mercado Pago rejects a PIX payment without `payer.email`, but the storefront
checkout only asks for name and phone. When the customer gave no usable email
we send a deterministic pseudo address built from the first name and the phone
digits, so the same customer always maps to the same payer. The pseudo address
only goes to the provider; it is never stored with the charge.
"""

from __future__ import annotations

import re
import unicodedata
from typing import Any

from .contracts import CustomerInfo

_NON_SLUG = re.compile(r"[^a-z0-9]+")
_NON_DIGIT = re.compile(r"\D+")


def _slug(text: str) -> str:
    folded = unicodedata.normalize("NFKD", text).encode("ascii", "ignore").decode("ascii")
    return _NON_SLUG.sub("", folded.lower())


def _split_name(name: str | None) -> tuple[str, str]:
    parts = (name or "").split()
    if not parts:
        return "Cliente", "Forneiro"
    first = parts[0]
    last = " ".join(parts[1:]) or "Forneiro"
    return first, last


def has_real_email(email: str | None) -> bool:
    if not email:
        return False
    local, sep, domain = email.strip().partition("@")
    return bool(sep and local and "." in domain)


def pseudo_email(*, name: str | None, phone: str | None, fallback_ref: str, domain: str) -> str:
    first, _ = _split_name(name)
    slug = _slug(first) or "cliente"
    digits = _NON_DIGIT.sub("", phone or "")
    suffix = digits or _slug(fallback_ref) or "pedido"
    return f"{slug}.{suffix}@{domain}"


def build_payer(customer: CustomerInfo | None, *, order_id: str, email_domain: str) -> dict[str, Any]:
    name = customer.name if customer else None
    phone = customer.phone if customer else None
    email = customer.email if customer else None
    first, last = _split_name(name)

    if has_real_email(email):
        payer_email = email.strip()  # type: ignore[union-attr]
    else:
        payer_email = pseudo_email(
            name=name, phone=phone, fallback_ref=order_id, domain=email_domain
        )
    return {"email": payer_email, "first_name": first, "last_name": last}
