"""
The process-wide WhatsApp provider.

Only the Cloud API is supported; the provider shares the process-wide
"whatsapp" circuit breaker with every other send in the process.
"""
from functools import lru_cache

from app.core.circuit_breaker import get_whatsapp_circuit_breaker
from app.core.logging import get_logger
from app.domain.services.whatsapp.base_provider import BaseWhatsAppProvider
from app.domain.services.whatsapp.pywa_provider import PyWaProvider

logger = get_logger(__name__)


@lru_cache(maxsize=1)
def get_whatsapp_provider() -> BaseWhatsAppProvider:
    provider = PyWaProvider(circuit_breaker=get_whatsapp_circuit_breaker())
    logger.info("WhatsApp provider initialized", extra_data={"provider": provider.provider_name})
    return provider


def reset_providers() -> None:
    """Drop the cached provider (tests swap settings and breakers between cases)"""
    get_whatsapp_provider.cache_clear()
