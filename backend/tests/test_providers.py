import datetime
import json
import socket
from decimal import Decimal
from urllib.error import HTTPError, URLError

import pytest

from marketdesk.config.settings import ProviderSettings
from marketdesk.errors import (
    ProviderInvalidResponse,
    ProviderNetworkError,
    ProviderNotFound,
    ProviderRateLimited,
    ProviderTimeout,
)
from marketdesk.providers.alpha_vantage import AlphaVantageAdapter
from marketdesk.providers.base import Capability, capabilities_of
from marketdesk.providers.fmp import FmpAdapter
from marketdesk.providers.registry import build_adapters
from marketdesk.providers.tiingo import TiingoAdapter
from marketdesk.schemas.status import ProviderLimits

UTC = datetime.UTC


class FakeResponse:
    def __init__(self, body: str) -> None:
        self.body = body.encode("utf-8")

    def read(self) -> bytes:
        return self.body

    def __enter__(self) -> "FakeResponse":
        return self

    def __exit__(self, *exc) -> bool:
        return False


class FakeUrlopen:
    def __init__(self, body=None, error: Exception | None = None) -> None:
        self.body = body
        self.error = error
        self.requests = []
        self.timeouts = []

    def __call__(self, request, timeout):
        self.requests.append(request)
        self.timeouts.append(timeout)
        if self.error is not None:
            raise self.error
        body = self.body if isinstance(self.body, str) else json.dumps(self.body)
        return FakeResponse(body)


def install(monkeypatch, body=None, error: Exception | None = None) -> FakeUrlopen:
    fake = FakeUrlopen(body, error)
    monkeypatch.setattr("marketdesk.providers.base.urlopen", fake)
    return fake


def fmp() -> FmpAdapter:
    return FmpAdapter(api_key="fmp-key", base_url="https://fmp.test", limits=ProviderLimits(daily_limit=250))


def alpha_vantage() -> AlphaVantageAdapter:
    return AlphaVantageAdapter(
        api_key="av-key", base_url="https://av.test", limits=ProviderLimits(daily_limit=25)
    )


def tiingo() -> TiingoAdapter:
    return TiingoAdapter(
        api_key="tiingo-key",
        base_url="https://tiingo.test",
        limits=ProviderLimits(daily_limit=1000, hourly_limit=50),
    )


def test_fmp_quote_keeps_exact_price(monkeypatch) -> None:
    fake = install(monkeypatch, [{"symbol": "VTI", "price": 251.4, "timestamp": 1748880000}])

    quote = fmp().fetch_quote("VTI")

    assert quote.price == Decimal("251.4")
    assert str(quote.price) == "251.4"
    assert quote.as_of == datetime.datetime(2025, 6, 2, 16, 0, tzinfo=UTC)
    assert quote.provider == "fmp"
    assert quote.instrument_id is None
    assert "symbol=VTI" in fake.requests[0].full_url
    assert fake.timeouts == [10.0]


def test_fmp_search_maps_results(monkeypatch) -> None:
    install(
        monkeypatch,
        [
            {"symbol": "VTI", "name": "Vanguard Total Stock Market ETF", "exchange": "AMEX", "currency": "USD"},
            {"name": "no symbol, skipped"},
        ],
    )

    results = fmp().search("vanguard total")

    assert len(results) == 1
    assert results[0].symbol == "VTI"
    assert results[0].exchange == "AMEX"
    assert results[0].currency == "USD"


def test_fmp_empty_quote_is_not_found(monkeypatch) -> None:
    install(monkeypatch, [])
    with pytest.raises(ProviderNotFound):
        fmp().fetch_quote("NOPE")


def test_fmp_missing_price_is_invalid(monkeypatch) -> None:
    install(monkeypatch, [{"symbol": "VTI"}])
    with pytest.raises(ProviderInvalidResponse):
        fmp().fetch_quote("VTI")


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (HTTPError("https://fmp.test", 429, "Too Many Requests", None, None), ProviderRateLimited),
        (HTTPError("https://fmp.test", 404, "Not Found", None, None), ProviderNotFound),
        (HTTPError("https://fmp.test", 503, "Unavailable", None, None), ProviderNetworkError),
        (socket.timeout("timed out"), ProviderTimeout),
        (URLError(socket.timeout("timed out")), ProviderTimeout),
        (URLError("connection refused"), ProviderNetworkError),
        (ConnectionResetError("reset"), ProviderNetworkError),
    ],
)
def test_transport_failures_are_classified(monkeypatch, error, expected) -> None:
    install(monkeypatch, error=error)
    with pytest.raises(expected) as excinfo:
        fmp().fetch_quote("VTI")
    assert excinfo.value.provider == "fmp"
    assert "fmp-key" not in str(excinfo.value)


def test_non_json_body_is_invalid(monkeypatch) -> None:
    install(monkeypatch, "<html>gateway</html>")
    with pytest.raises(ProviderInvalidResponse):
        fmp().fetch_quote("VTI")


def test_alpha_vantage_quote(monkeypatch) -> None:
    install(
        monkeypatch,
        {"Global Quote": {"01. symbol": "VTI", "05. price": "251.4000", "07. latest trading day": "2025-06-02"}},
    )

    quote = alpha_vantage().fetch_quote("VTI")

    assert quote.price == Decimal("251.4000")
    assert quote.as_of == datetime.datetime(2025, 6, 2, tzinfo=UTC)
    assert quote.provider == "alpha-vantage"


def test_alpha_vantage_soft_limit_is_rate_limited(monkeypatch) -> None:
    install(
        monkeypatch,
        {"Information": "Thank you for using Alpha Vantage! Our standard API rate limit is 25 requests per day."},
    )
    with pytest.raises(ProviderRateLimited):
        alpha_vantage().fetch_quote("VTI")


def test_alpha_vantage_note_is_rate_limited(monkeypatch) -> None:
    install(monkeypatch, {"Note": "API call frequency exceeded"})
    with pytest.raises(ProviderRateLimited):
        alpha_vantage().search("vanguard")


def test_alpha_vantage_empty_quote_is_not_found(monkeypatch) -> None:
    install(monkeypatch, {"Global Quote": {}})
    with pytest.raises(ProviderNotFound):
        alpha_vantage().fetch_quote("NOPE")


def test_alpha_vantage_search(monkeypatch) -> None:
    install(
        monkeypatch,
        {
            "bestMatches": [
                {
                    "1. symbol": "VTI",
                    "2. name": "Vanguard Total Stock Market ETF",
                    "3. type": "ETF",
                    "4. region": "United States",
                    "8. currency": "USD",
                }
            ]
        },
    )

    results = alpha_vantage().search("vanguard")

    assert [result.symbol for result in results] == ["VTI"]
    assert results[0].type == "etf"
    assert results[0].exchange == "United States"


def test_tiingo_quote_uses_token_header(monkeypatch) -> None:
    fake = install(
        monkeypatch,
        [{"ticker": "VTI", "tngoLast": 251.4, "lastSaleTimestamp": "2025-06-02T16:00:00.123456789+00:00"}],
    )

    quote = tiingo().fetch_quote("VTI")

    request = fake.requests[0]
    assert request.get_header("Authorization") == "Token tiingo-key"
    assert "tiingo-key" not in request.full_url
    assert quote.price == Decimal("251.4")
    assert quote.as_of == datetime.datetime(2025, 6, 2, 16, 0, 0, 123456, tzinfo=UTC)


def test_tiingo_history_prefers_adjusted_prices(monkeypatch) -> None:
    fake = install(
        monkeypatch,
        [
            {
                "date": "2025-06-02T00:00:00.000Z",
                "open": 500.0,
                "close": 502.0,
                "high": 503.0,
                "low": 499.0,
                "volume": 10,
                "adjOpen": 250.0,
                "adjHigh": 251.5,
                "adjLow": 249.5,
                "adjClose": 251.0,
                "adjVolume": 20,
            },
            {"date": "2025-06-03T00:00:00.000Z", "open": 251.0, "high": 252.0, "low": 250.0, "close": 251.4},
        ],
    )

    bars = tiingo().fetch_history("VTI", datetime.date(2025, 6, 2), datetime.date(2025, 6, 3))

    assert "startDate=2025-06-02" in fake.requests[0].full_url
    assert [bar.date for bar in bars] == [datetime.date(2025, 6, 2), datetime.date(2025, 6, 3)]
    assert bars[0].open == Decimal("250.0")
    assert bars[0].close == Decimal("251.0")
    assert bars[0].volume == 20
    assert bars[1].close == Decimal("251.4")
    assert bars[1].volume is None


def test_tiingo_plain_text_error_is_invalid(monkeypatch) -> None:
    install(monkeypatch, "Error: unexpected server failure, try again later.")
    with pytest.raises(ProviderInvalidResponse):
        tiingo().fetch_history("VTI", datetime.date(2025, 6, 2), datetime.date(2025, 6, 3))


def test_tiingo_plain_text_throttle_is_rate_limited(monkeypatch) -> None:
    install(monkeypatch, "Rate Limit Exceeded. You have exceeded the hourly limit of 50 requests.")
    with pytest.raises(ProviderRateLimited):
        tiingo().fetch_quote("VTI")


def test_tiingo_empty_history_is_not_found(monkeypatch) -> None:
    install(monkeypatch, [])
    with pytest.raises(ProviderNotFound):
        tiingo().fetch_history("VTI", datetime.date(2025, 6, 7), datetime.date(2025, 6, 8))


def test_capabilities_are_structural() -> None:
    assert capabilities_of(fmp()) == {Capability.SEARCH, Capability.QUOTE}
    assert capabilities_of(alpha_vantage()) == {Capability.SEARCH, Capability.QUOTE}
    assert capabilities_of(tiingo()) == {Capability.QUOTE, Capability.HISTORY, Capability.BATCH_QUOTE}


def test_registry_skips_providers_without_keys() -> None:
    providers = ProviderSettings(FMP_API_KEY="fmp-key", ALPHA_VANTAGE_API_KEY=None, TIINGO_API_KEY="tiingo-key")

    adapters = build_adapters(providers)

    assert sorted(adapters) == ["fmp", "tiingo"]
    assert adapters["tiingo"].limits.hourly_limit == 50
    assert adapters["fmp"].timeout_seconds == providers.request_timeout_seconds


def test_fmp_search_with_non_string_name_is_invalid(monkeypatch) -> None:
    install(monkeypatch, [{"symbol": "VTI", "name": 123}])
    with pytest.raises(ProviderInvalidResponse):
        fmp().search("vti")


def test_fmp_quote_with_non_string_symbol_is_invalid(monkeypatch) -> None:
    install(monkeypatch, [{"symbol": 42, "price": 251.4}])
    with pytest.raises(ProviderInvalidResponse):
        fmp().fetch_quote("VTI")


def test_fmp_quote_with_unusable_timestamp_is_invalid(monkeypatch) -> None:
    install(monkeypatch, [{"symbol": "VTI", "price": 251.4, "timestamp": 10**20}])
    with pytest.raises(ProviderInvalidResponse):
        fmp().fetch_quote("VTI")


def test_alpha_vantage_search_with_non_string_type_is_invalid(monkeypatch) -> None:
    install(monkeypatch, {"bestMatches": [{"1. symbol": "VTI", "2. name": "Vanguard", "3. type": 7}]})
    with pytest.raises(ProviderInvalidResponse):
        alpha_vantage().search("vanguard")


def test_tiingo_history_with_non_numeric_volume_is_invalid(monkeypatch) -> None:
    install(
        monkeypatch,
        [{"date": "2025-06-02T00:00:00.000Z", "open": 250, "high": 252, "low": 249, "close": 251, "volume": "n/a"}],
    )
    with pytest.raises(ProviderInvalidResponse):
        tiingo().fetch_history("VTI", datetime.date(2025, 6, 2), datetime.date(2025, 6, 2))


def test_tiingo_history_rounds_fractional_adjusted_volume(monkeypatch) -> None:
    install(
        monkeypatch,
        [{"date": "2025-06-02T00:00:00.000Z", "adjOpen": 250, "adjHigh": 252, "adjLow": 249, "adjClose": 251,
          "adjVolume": 1500.6}],
    )

    bars = tiingo().fetch_history("VTI", datetime.date(2025, 6, 2), datetime.date(2025, 6, 2))

    assert bars[0].volume == 1501


def test_tiingo_batch_quotes_use_one_request(monkeypatch) -> None:
    fake = install(
        monkeypatch,
        [
            {"ticker": "AAPL", "tngoLast": 185.25, "lastSaleTimestamp": "2026-02-25T20:00:00+00:00"},
            {"ticker": "MSFT", "tngoLast": 420.50, "lastSaleTimestamp": "2026-02-25T20:00:00+00:00"},
            {"ticker": "VTI", "last": 290.75, "timestamp": "2026-02-25T20:00:00+00:00"},
        ],
    )

    quotes = tiingo().fetch_batch_quotes(["AAPL", "MSFT", "VTI", "FAKESYM"])

    assert len(fake.requests) == 1
    assert "tickers=AAPL%2CMSFT%2CVTI%2CFAKESYM" in fake.requests[0].full_url
    assert [quote.symbol for quote in quotes] == ["AAPL", "MSFT", "VTI"]
    assert quotes[0].price == Decimal("185.25")
    assert quotes[2].price == Decimal("290.75")
    assert {quote.provider for quote in quotes} == {"tiingo"}


def test_tiingo_batch_quotes_skip_unusable_items(monkeypatch) -> None:
    install(
        monkeypatch,
        [
            {"ticker": "AAPL", "tngoLast": 185.25},
            {"ticker": "MSFT"},
            {"tngoLast": 10},
            {"ticker": 42, "tngoLast": 1},
        ],
    )

    quotes = tiingo().fetch_batch_quotes(["AAPL", "MSFT"])

    assert [quote.symbol for quote in quotes] == ["AAPL"]


class ChunkedUrlopen(FakeUrlopen):
    def __call__(self, request, timeout):
        self.requests.append(request)
        query = request.full_url.split("tickers=", 1)[1]
        tickers = query.split("%2C")
        return FakeResponse(json.dumps([{"ticker": ticker, "tngoLast": 100} for ticker in tickers]))


def test_tiingo_batch_quotes_are_chunked(monkeypatch) -> None:
    fake = ChunkedUrlopen()
    monkeypatch.setattr("marketdesk.providers.base.urlopen", fake)
    symbols = [f"SYM{index}" for index in range(75)]

    quotes = tiingo().fetch_batch_quotes(symbols)

    assert len(fake.requests) == 2
    assert "SYM49" in fake.requests[0].full_url
    assert "SYM50" not in fake.requests[0].full_url
    assert "SYM50" in fake.requests[1].full_url
    assert [quote.symbol for quote in quotes] == symbols


def test_tiingo_batch_quotes_without_symbols_make_no_request(monkeypatch) -> None:
    fake = install(monkeypatch, [])
    assert tiingo().fetch_batch_quotes([]) == []
    assert fake.requests == []


def test_tiingo_batch_throttle_is_rate_limited(monkeypatch) -> None:
    install(monkeypatch, "Rate Limit Exceeded. You have exceeded the hourly limit of 50 requests.")
    with pytest.raises(ProviderRateLimited):
        tiingo().fetch_batch_quotes(["AAPL", "MSFT"])
