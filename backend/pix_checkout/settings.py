from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

REPO_ROOT = Path(__file__).resolve().parents[2]
ENV_FILE = REPO_ROOT / ".env"

# Mercado Pago sandbox credentials carry this prefix
TEST_CREDENTIAL_PREFIX = "TEST-"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE), env_file_encoding="utf-8", extra="ignore"
    )

    ENVIRONMENT: Literal["development", "staging", "production"] = "development"
    DEBUG: bool = False
    SERVICE_NAME: str = "forneiro-pix"
    VERSION: str = "0.3.0"

    # persistence directory for charges.json
    DATA_DIR: Path | None = None

    # Comma-separated list of storefront origins. Mandatory in production.
    FRONTEND_ORIGIN: str = ""

    # Mercado Pago
    MERCADO_PAGO_ACCESS_TOKEN: str | None = None
    MERCADO_PAGO_BASE_URL: str = "https://api.mercadopago.com"
    MERCADO_PAGO_TIMEOUT_SECONDS: float = 10.0
    PIX_TEST_CREDENTIALS: str = ""
    VALIDATE_CREDENTIAL_ON_STARTUP: bool = True
    PIX_DESCRIPTION_PREFIX: str = "Pedido Forneiro"

    # Webhooks
    MP_WEBHOOK_SECRET: str | None = None
    PRINT_WEBHOOK_URL: str | None = None
    PRINT_TIMEOUT_SECONDS: float = 8.0

    # Development helpers
    DEV_AUTO_APPROVE_MS: int = 0
    ENABLE_LOCAL_QR_FALLBACK: bool = False
    DEV_PIX_KEY: str = "pagamentos@forneiro.app"
    DEV_MERCHANT_NAME: str = "FORNEIRO EDEN"
    DEV_MERCHANT_CITY: str = "SAO PAULO"

    # Payer workaround for customers checking out without an email
    PAYER_EMAIL_DOMAIN: str = "clientes.forneiro.app"

    # Fan-out
    FANOUT_INCLUDE_RAW: bool = False
    # A subscriber that takes longer than this to accept one event is dropped
    FANOUT_SEND_TIMEOUT_SECONDS: float = 5.0

    # Rate limiting
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_REQUESTS: int = 120  # per window per client
    RATE_LIMIT_WINDOW_SECONDS: int = 60

    # Only trust X-Forwarded-For from these proxies (comma-separated IPs/CIDRs).
    # "*" trusts everyone and is only meant for local development.
    TRUSTED_PROXIES: str = ""

    # Observability
    SENTRY_DSN: str | None = None
    SENTRY_ENVIRONMENT: str = "development"
    SENTRY_RELEASE: str | None = None
    SENTRY_TRACES_SAMPLE_RATE: float = 0.2

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def allow_origins(self) -> list[str]:
        s = (self.FRONTEND_ORIGIN or "").strip()
        if s == "*":
            return ["*"]
        if s == "":
            return []
        return [part.strip().rstrip("/") for part in s.split(",") if part.strip()]

    @property
    def access_token(self) -> str:
        return (self.MERCADO_PAGO_ACCESS_TOKEN or "").strip()

    @property
    def test_credentials(self) -> set[str]:
        return {part.strip() for part in self.PIX_TEST_CREDENTIALS.split(",") if part.strip()}

    @property
    def uses_simulated_payments(self) -> bool:
        """True when charges must be faked locally instead of hitting Mercado Pago."""
        token = self.access_token
        if not token:
            return True
        return token.startswith(TEST_CREDENTIAL_PREFIX) or token in self.test_credentials

    @property
    def dev_auto_approve_seconds(self) -> float:
        return max(0, self.DEV_AUTO_APPROVE_MS) / 1000.0

    @property
    def masked_token(self) -> str:
        token = self.access_token
        if not token:
            return "<unset>"
        return token[:12] + "..."

    @property
    def data_dir(self) -> Path:
        # Blank DATA_DIR in `.env` would resolve to the repository root; treat it as unset.
        def _materialize(path: Path) -> Path:
            path.mkdir(parents=True, exist_ok=True)
            return path

        if self.DATA_DIR is not None:
            candidate = Path(self.DATA_DIR).expanduser()
            candidate_str = str(candidate).strip()
            if candidate_str and candidate_str not in {".", "./", ".\\"}:
                return _materialize(candidate.resolve())
        return _materialize(Path.home() / ".forneiro-pix-data")

    @property
    def charges_path(self) -> Path:
        return self.data_dir / "charges.json"

    def check_production_requirements(self) -> None:
        """Raise when a production deployment is missing mandatory configuration."""
        if not self.is_production:
            return
        problems: list[str] = []
        if not self.allow_origins:
            problems.append("FRONTEND_ORIGIN must be set in production")
        if "*" in self.allow_origins:
            problems.append("FRONTEND_ORIGIN cannot be '*' in production")
        if self.uses_simulated_payments:
            problems.append("MERCADO_PAGO_ACCESS_TOKEN must be a live credential in production")
        if problems:
            raise RuntimeError("; ".join(problems))


settings = Settings()
