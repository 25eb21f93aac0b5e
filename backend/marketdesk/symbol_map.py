from __future__ import annotations

from marketdesk.schemas.market import Instrument


def get_provider_symbol(instrument: Instrument, provider_name: str) -> str:
    """Ticker spelling ``provider_name`` expects, e.g. ``BRK-B`` for ``BRK.B``."""
    return instrument.provider_symbols.get(provider_name) or instrument.symbol
