import httpx
import pytest

from core.errors import FetchError, FetchErrorKind
from plugins.market_data.base import FailoverSource
from plugins.market_data.coingecko import CoinGeckoCryptoSource
from plugins.market_data.finnhub import FinnhubEquitySource
from plugins.market_data.yahoo_finance import (
    YahooEquitySource,
    YahooForexSource,
    pair_from_ticker,
    yahoo_equity_chain,
)


def client_for(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def chart_payload(price=2850.5, previous=2800.0, state="REGULAR"):
    return {
        "chart": {
            "result": [{
                "meta": {
                    "symbol": "RELIANCE.NS",
                    "regularMarketPrice": price,
                    "previousClose": previous,
                    "regularMarketDayHigh": 2860.0,
                    "regularMarketDayLow": 2790.0,
                    "regularMarketVolume": 1234567,
                    "marketState": state,
                    "regularMarketTime": 1704876000,
                },
            }],
            "error": None,
        },
    }


class TestYahooEquitySource:

    @pytest.mark.asyncio
    async def test_parses_chart_meta(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=chart_payload())

        source = YahooEquitySource(client=client_for(handler))
        quote = await source.fetch("RELIANCE.NS")

        assert quote.symbol == "RELIANCE.NS"
        assert quote.price == 2850.5
        assert quote.absolute_change == pytest.approx(50.5)
        assert quote.percent_change == pytest.approx(1.8, abs=0.01)
        assert quote.session_state == "REGULAR"
        assert quote.day_high == 2860.0
        assert quote.volume == 1234567
        assert seen[0].url.host == "query1.finance.yahoo.com"
        assert seen[0].url.params["range"] == "1d"

    @pytest.mark.asyncio
    async def test_unknown_market_state_falls_back_to_trading_hours(self):
        def handler(request):
            return httpx.Response(200, json=chart_payload(state="PREPRE"))

        quote = await YahooEquitySource(client=client_for(handler)).fetch("TCS.NS")
        assert quote.session_state in ("REGULAR", "PRE", "POST", "CLOSED")

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status,kind",
        [
            (429, FetchErrorKind.RATE_LIMITED),
            (500, FetchErrorKind.HTTP_ERROR),
            (404, FetchErrorKind.HTTP_ERROR),
        ],
    )
    async def test_status_classification(self, status, kind):
        def handler(request):
            return httpx.Response(status, text="nope")

        source = YahooEquitySource(client=client_for(handler))
        with pytest.raises(FetchError) as exc_info:
            await source.fetch("TCS.NS")
        assert exc_info.value.kind is kind
        assert exc_info.value.status_code == status

    @pytest.mark.asyncio
    async def test_timeout_classification(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        result = await YahooEquitySource(client=client_for(handler)).try_fetch("TCS.NS")
        assert not result.ok
        assert result.error.kind is FetchErrorKind.TIMEOUT

    @pytest.mark.asyncio
    async def test_connection_error_is_http_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        result = await YahooEquitySource(client=client_for(handler)).try_fetch("TCS.NS")
        assert result.error.kind is FetchErrorKind.HTTP_ERROR

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "response",
        [
            httpx.Response(200, text="<html>not json</html>"),
            httpx.Response(200, json={"chart": {"result": [], "error": {"code": "Not Found"}}}),
            httpx.Response(200, json={"chart": {"result": [{"meta": {}}]}}),
            httpx.Response(200, json=chart_payload(price=0)),
            httpx.Response(200, json=chart_payload(price=-5)),
            httpx.Response(200, json=[]),
            httpx.Response(200, json=42),
            httpx.Response(200, json={"chart": []}),
            httpx.Response(200, json={"chart": {"result": [{"meta": []}]}}),
        ],
    )
    async def test_malformed_payloads(self, response):
        def handler(request):
            return response

        result = await YahooEquitySource(client=client_for(handler)).try_fetch("TCS.NS")
        assert result.error.kind is FetchErrorKind.MALFORMED


class TestYahooForexSource:

    @pytest.mark.asyncio
    async def test_rate_rounded_to_four_places(self):
        def handler(request):
            return httpx.Response(200, json=chart_payload(price=84.123456, previous=84.0))

        rate = await YahooForexSource(client=client_for(handler)).fetch("USDINR=X")
        assert rate.pair == "USD/INR"
        assert rate.rate == 84.1235

    def test_pair_from_ticker(self):
        assert pair_from_ticker("EURINR=X") == "EUR/INR"
        assert pair_from_ticker("odd") == "ODD"


class TestFinnhubEquitySource:

    @pytest.mark.asyncio
    async def test_parses_quote_and_maps_symbol(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={
                "c": 24612.3, "d": 112.3, "dp": 0.46, "h": 24650, "l": 24480, "pc": 24500, "t": 1704876000,
            })

        source = FinnhubEquitySource(
            api_key="test-key", symbol_map={"^NSEI": "NIFTY_50"}, client=client_for(handler),
        )
        quote = await source.fetch("^NSEI")

        assert quote.symbol == "^NSEI"
        assert quote.price == 24612.3
        assert quote.percent_change == 0.46
        assert seen[0].url.params["symbol"] == "NIFTY_50"
        assert seen[0].url.params["token"] == "test-key"

    @pytest.mark.asyncio
    async def test_zero_price_is_malformed(self):
        def handler(request):
            return httpx.Response(200, json={"c": 0, "d": None, "dp": None, "h": 0, "l": 0, "pc": 0, "t": 0})

        source = FinnhubEquitySource(api_key="k", client=client_for(handler))
        result = await source.try_fetch("UNKNOWN")
        assert result.error.kind is FetchErrorKind.MALFORMED

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [[], "quote", {"c": "n/a"}])
    async def test_non_object_bodies_are_malformed(self, body):
        def handler(request):
            return httpx.Response(200, json=body)

        source = FinnhubEquitySource(api_key="k", client=client_for(handler))
        result = await source.try_fetch("TCS.NS")
        assert result.error.kind is FetchErrorKind.MALFORMED

    def test_requires_api_key(self):
        with pytest.raises(ValueError):
            FinnhubEquitySource(api_key="")


class TestCoinGeckoCryptoSource:

    @pytest.mark.asyncio
    async def test_parses_price_and_change(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={
                "bitcoin": {"inr": 3_600_000, "inr_24h_change": 2.5, "last_updated_at": 1704876000},
            })

        source = CoinGeckoCryptoSource({"BTC": ("bitcoin", "Bitcoin")}, client=client_for(handler))
        coin = await source.fetch("BTC")

        assert coin.symbol == "BTC"
        assert coin.display_name == "Bitcoin"
        assert coin.quote_currency == "INR"
        assert coin.price_in_quote_currency == 3_600_000
        assert coin.percent_change_24h == 2.5
        assert coin.absolute_change_24h > 0
        assert seen[0].url.params["ids"] == "bitcoin"
        assert seen[0].url.params["vs_currencies"] == "inr"

    @pytest.mark.asyncio
    async def test_missing_coin_is_malformed(self):
        def handler(request):
            return httpx.Response(200, json={})

        source = CoinGeckoCryptoSource({"ETH": ("ethereum", "Ethereum")}, client=client_for(handler))
        result = await source.try_fetch("ETH")
        assert result.error.kind is FetchErrorKind.MALFORMED


    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [[], [1], {"bitcoin": [3_600_000]}, {"bitcoin": {"usd": 1}}])
    async def test_unexpected_shapes_are_malformed(self, body):
        def handler(request):
            return httpx.Response(200, json=body)

        source = CoinGeckoCryptoSource({"BTC": ("bitcoin", "Bitcoin")}, client=client_for(handler))
        result = await source.try_fetch("BTC")
        assert result.error.kind is FetchErrorKind.MALFORMED

class TestFailoverSource:

    @pytest.mark.asyncio
    async def test_second_host_serves_when_first_fails(self):
        hosts = []

        def handler(request):
            hosts.append(request.url.host)
            if request.url.host.startswith("query1"):
                return httpx.Response(503)
            return httpx.Response(200, json=chart_payload())

        chain = yahoo_equity_chain(client=client_for(handler))
        quote = await chain.fetch("RELIANCE.NS")

        assert quote.price == 2850.5
        assert hosts == ["query1.finance.yahoo.com", "query2.finance.yahoo.com"]

    @pytest.mark.asyncio
    async def test_all_rate_limited_reports_rate_limited(self):
        def handler(request):
            return httpx.Response(429)

        result = await yahoo_equity_chain(client=client_for(handler)).try_fetch("TCS.NS")
        assert result.error.kind is FetchErrorKind.RATE_LIMITED

    @pytest.mark.asyncio
    async def test_mixed_failures_report_last_kind(self):
        def handler(request):
            if request.url.host.startswith("query1"):
                return httpx.Response(429)
            raise httpx.ReadTimeout("slow", request=request)

        result = await yahoo_equity_chain(client=client_for(handler)).try_fetch("TCS.NS")
        assert result.error.kind is FetchErrorKind.TIMEOUT

    def test_requires_sources(self):
        with pytest.raises(ValueError):
            FailoverSource("empty", "equities", [])
