"""Health check module with dependency verification."""

from __future__ import annotations

import time
from typing import Any

from .settings import Settings
from .storage import ChargeStore


def _is_configured(value: str | None) -> bool:
    """Return True when a config string is non-empty after trimming."""
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    return bool(value)


class HealthChecker:
    """Health checker for the charge store, payment provider and print sink."""

    def __init__(self, config: Settings, store: ChargeStore) -> None:
        self.config = config
        self.store = store
        self._check_cache: dict[str, tuple[dict[str, Any], float]] = {}
        self._cache_ttl = 30.0  # Cache health checks for 30 seconds

    async def check_all(self) -> dict[str, Any]:
        """
        Check health of all dependencies.

        Returns:
            Dict with overall status and individual component checks
        """
        checks = {
            "charge_store": await self._check_charge_store(),
            "provider": self._check_provider(),
            "print_sink": self._check_print_sink(),
            "sentry": (
                self._check_sentry()
                if _is_configured(self.config.SENTRY_DSN)
                else {"status": "disabled"}
            ),
        }

        all_ok = all(
            check.get("status") in {"ok", "disabled", "simulated"} for check in checks.values()
        )

        return {
            "status": "healthy" if all_ok else "degraded",
            "timestamp": time.time(),
            "checks": checks,
        }

    async def _check_charge_store(self) -> dict[str, Any]:
        """Check that the charge file can be read."""
        try:
            charges = await self.store.list_charges()
            return {
                "status": "ok",
                "charge_count": len(charges),
                "storage_path": str(self.store.path),
            }
        except Exception as exc:
            return {
                "status": "error",
                "error": str(exc),
                "error_type": type(exc).__name__,
            }

    def _check_provider(self) -> dict[str, Any]:
        if self.config.uses_simulated_payments:
            return {
                "status": "simulated",
                "auto_approve_seconds": self.config.dev_auto_approve_seconds,
            }
        return {
            "status": "ok",
            "base_url": self.config.MERCADO_PAGO_BASE_URL,
            "token": self.config.masked_token,
        }

    def _check_print_sink(self) -> dict[str, Any]:
        if not _is_configured(self.config.PRINT_WEBHOOK_URL):
            return {"status": "disabled", "reason": "PRINT_WEBHOOK_URL not configured"}
        return {"status": "ok"}

    def _check_sentry(self) -> dict[str, Any]:
        """Check if Sentry is configured (doesn't actually test connectivity)."""
        cached = self._get_cached_check("sentry")
        if cached is not None:
            return cached

        dsn = self.config.SENTRY_DSN or ""
        if "@" in dsn and "//" in dsn:
            result = {
                "status": "ok",
                "environment": self.config.SENTRY_ENVIRONMENT,
                "release": self.config.SENTRY_RELEASE or "unset",
            }
        else:
            result = {"status": "error", "error": "Invalid SENTRY_DSN format"}

        self._cache_check("sentry", result)
        return result

    def _get_cached_check(self, key: str) -> dict[str, Any] | None:
        """Get cached health check result if still valid."""
        if key not in self._check_cache:
            return None

        result, timestamp = self._check_cache[key]
        if time.time() - timestamp > self._cache_ttl:
            return None

        return result

    def _cache_check(self, key: str, result: dict[str, Any]) -> None:
        self._check_cache[key] = (result, time.time())

    def clear_cache(self) -> None:
        """Clear cached dependency checks (useful for tests)."""
        self._check_cache.clear()


__all__ = ["HealthChecker"]
