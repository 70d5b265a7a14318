from __future__ import annotations

from typing import Annotated

from fastapi import Header, Path

from ..contracts import CHARGE_ID_PATTERN

PaymentId = Annotated[
    str,
    Path(
        min_length=1,
        max_length=64,
        pattern=CHARGE_ID_PATTERN,
        description="Mercado Pago payment id, or a dev_ id for simulated charges",
    ),
]

IdempotencyKey = Annotated[
    str | None,
    Header(
        alias="X-Idempotency-Key",
        max_length=128,
        description="Reused on retries so the provider never creates a second charge",
    ),
]
