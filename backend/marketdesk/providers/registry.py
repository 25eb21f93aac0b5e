from __future__ import annotations

import logging

from marketdesk.config.settings import ProviderSettings
from marketdesk.providers.alpha_vantage import AlphaVantageAdapter
from marketdesk.providers.base import ProviderAdapter
from marketdesk.providers.fmp import FmpAdapter
from marketdesk.providers.tiingo import TiingoAdapter

logger = logging.getLogger(__name__)


def build_adapters(providers: ProviderSettings) -> dict[str, ProviderAdapter]:
    """Adapters keyed by name, for every vendor that has credentials."""
    candidates = [
        (FmpAdapter, providers.fmp_api_key, providers.fmp_base_url, providers.limits.fmp),
        (
            AlphaVantageAdapter,
            providers.alpha_vantage_api_key,
            providers.alpha_vantage_base_url,
            providers.limits.alpha_vantage,
        ),
        (TiingoAdapter, providers.tiingo_api_key, providers.tiingo_base_url, providers.limits.tiingo),
    ]

    adapters: dict[str, ProviderAdapter] = {}
    for adapter_cls, api_key, base_url, limits in candidates:
        if not api_key:
            logger.warning("No API key for %s, provider disabled", adapter_cls.name)
            continue
        adapters[adapter_cls.name] = adapter_cls(
            api_key=api_key,
            base_url=base_url,
            limits=limits,
            timeout_seconds=providers.request_timeout_seconds,
        )
    return adapters
