"""Payment provider gateways for PIX charges."""

from .base import (
    InvalidProviderResponse,
    PaymentProvider,
    ProviderCharge,
    ProviderConfigurationError,
    ProviderError,
    ProviderRejectedError,
    ProviderTransientError,
)
from .factory import build_live_gateway, build_simulator
from .mercadopago import MercadoPagoGateway
from .simulated import DEV_CHARGE_PREFIX, SimulatedPixGateway, is_dev_charge_id

__all__ = [
    "DEV_CHARGE_PREFIX",
    "InvalidProviderResponse",
    "MercadoPagoGateway",
    "PaymentProvider",
    "ProviderCharge",
    "ProviderConfigurationError",
    "ProviderError",
    "ProviderRejectedError",
    "ProviderTransientError",
    "SimulatedPixGateway",
    "build_live_gateway",
    "build_simulator",
    "is_dev_charge_id",
]
