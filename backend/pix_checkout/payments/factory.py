from __future__ import annotations

from ..logging_config import get_logger
from ..settings import Settings
from .base import PaymentProvider
from .mercadopago import MercadoPagoGateway
from .simulated import SimulatedPixGateway

logger = get_logger(__name__)


def build_live_gateway(config: Settings) -> PaymentProvider | None:
    """Mercado Pago client, or None when charges are simulated."""
    if config.uses_simulated_payments:
        logger.warning(
            "pix_simulated_mode",
            reason="missing or test credential",
            token=config.masked_token,
        )
        return None
    return MercadoPagoGateway(
        access_token=config.access_token,
        base_url=config.MERCADO_PAGO_BASE_URL,
        timeout=config.MERCADO_PAGO_TIMEOUT_SECONDS,
    )


def build_simulator(config: Settings) -> SimulatedPixGateway:
    return SimulatedPixGateway(
        pix_key=config.DEV_PIX_KEY,
        merchant_name=config.DEV_MERCHANT_NAME,
        merchant_city=config.DEV_MERCHANT_CITY,
        auto_approve_seconds=config.dev_auto_approve_seconds,
    )
