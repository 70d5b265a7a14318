from __future__ import annotations

from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse


class PaymentAPIError(Exception):
    """An error surfaced to HTTP callers as `{"error": code, "detail": ...}`."""

    def __init__(self, status_code: int, error: str, detail: Any = None) -> None:
        super().__init__(f"{error}: {detail}" if detail is not None else error)
        self.status_code = status_code
        self.error = error
        self.detail = detail

    def to_body(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.error}
        if self.detail is not None:
            body["detail"] = self.detail
        return body


async def payment_api_error_handler(request: Request, exc: PaymentAPIError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_body())


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(PaymentAPIError, payment_api_error_handler)


__all__ = ["PaymentAPIError", "register_error_handlers"]
