"""Finsight Feed entrypoint -- wires all components together and starts the server.

Usage:
    python main.py
    python main.py --config /path/to/config.yaml
"""

from __future__ import annotations

import argparse
import asyncio
import logging

from aiohttp import web

from core.config import AppConfig, api_key_or_none, load_config
from core.data.cache import FileSnapshotStore, MemorySnapshotStore, SnapshotCache
from core.duration import duration_seconds, parse_duration
from core.market_hours import TradingHours
from core.protocols import QuoteSource, SnapshotStore
from core.rate_limiter import RateLimiter
from engine.aggregator import Aggregator, Instrument
from engine.fallback import FallbackSynthesizer
from engine.service import MarketDataService
from plugins.market_data.base import FailoverSource
from server import create_app


def setup_logging(level: str) -> None:
    """Configure logging for the application."""
    numeric = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=numeric,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    logging.getLogger().setLevel(numeric)
    # Quiet down noisy libraries
    logging.getLogger("aiohttp").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Finsight market data feed")
    parser.add_argument(
        "--config", "-c",
        type=str,
        default=None,
        help="Path to config.yaml (default: ~/.finsight/config.yaml)",
    )
    parser.add_argument(
        "--env",
        type=str,
        default=None,
        help="Path to .env file (default: ~/.finsight/.env)",
    )
    return parser.parse_args()


def trading_hours_from_config(config: AppConfig) -> TradingHours:
    hours = config.scheduler.trading_hours
    return TradingHours(
        tz=hours.timezone,
        open_time=hours.open,
        close_time=hours.close,
        pre_open_time=hours.pre_open,
        post_close_time=hours.post_close,
        trading_days=tuple(hours.trading_days),
    )


def build_instruments(config: AppConfig, synthesizer: FallbackSynthesizer) -> list[Instrument]:
    """Instrument list in configured order, with fallback baselines registered."""
    md = config.market_data
    instruments: list[Instrument] = []

    for eq in md.equities:
        is_index = eq.kind == "index" or eq.symbol.startswith("^")
        synthesizer.register(eq.symbol, eq.baseline, eq.volatility, eq.display_name, is_index)
        instruments.append(Instrument(eq.symbol, "equities", eq.display_name, is_index))

    for fx in md.forex:
        synthesizer.register(fx.symbol, fx.baseline, fx.volatility, fx.pair)
        instruments.append(Instrument(fx.symbol, "forex", fx.pair))

    for coin in md.crypto:
        synthesizer.register(coin.symbol, coin.baseline, coin.volatility, coin.display_name)
        instruments.append(Instrument(coin.symbol, "crypto", coin.display_name))

    return instruments


def build_sources(
    config: AppConfig,
    hours: TradingHours,
    limiter: RateLimiter | None = None,
) -> dict[str, QuoteSource | None]:
    """Instantiate the enabled quote sources, one chain per family.

    With a limiter, chains pace each upstream member under its own name.
    """
    logger = logging.getLogger("finsight.plugins")
    md = config.market_data
    timeout = duration_seconds(md.request_timeout)
    sources: dict[str, QuoteSource | None] = {"equities": None, "forex": None, "crypto": None}

    # 1. Equities: Finnhub (if keyed) ahead of Yahoo query1 -> query2
    equity_chain: list = []
    finnhub_cfg = md.provider("finnhub")
    finnhub_key = api_key_or_none(finnhub_cfg)
    if finnhub_cfg.enabled and finnhub_key:
        from plugins.market_data.finnhub import FinnhubEquitySource
        symbol_map = {e.symbol: e.finnhub_symbol for e in md.equities if e.finnhub_symbol}
        equity_chain.append(FinnhubEquitySource(
            api_key=finnhub_key,
            symbol_map=symbol_map,
            timeout=timeout,
            trading_hours=hours,
        ))
        logger.info("Loaded quote source: finnhub")
    elif finnhub_cfg.enabled:
        logger.info("Finnhub enabled but FINNHUB_API_KEY is not set, skipping")

    yahoo_cfg = md.provider("yahoo_finance")
    if yahoo_cfg.enabled:
        from plugins.market_data.yahoo_finance import yahoo_equity_chain, yahoo_forex_chain
        equity_chain.extend(yahoo_equity_chain(timeout=timeout, trading_hours=hours).sources)
        sources["forex"] = yahoo_forex_chain(timeout=timeout, limiter=limiter)
        logger.info("Loaded quote source: yahoo_finance")

    if equity_chain:
        sources["equities"] = FailoverSource("equities", "equities", equity_chain, limiter=limiter)

    # 2. Crypto
    coingecko_cfg = md.provider("coingecko")
    if coingecko_cfg.enabled:
        from plugins.market_data.coingecko import CoinGeckoCryptoSource
        sources["crypto"] = CoinGeckoCryptoSource(
            coins={c.symbol: (c.id, c.display_name) for c in md.crypto},
            quote_currency=md.quote_currency,
            timeout=timeout,
        )
        logger.info("Loaded quote source: coingecko")

    return sources


def build_service(
    config: AppConfig,
    store: SnapshotStore | None = None,
    sources: dict[str, QuoteSource | None] | None = None,
) -> MarketDataService:
    """Assemble a MarketDataService from configuration."""
    md = config.market_data
    hours = trading_hours_from_config(config)

    if store is None:
        if config.cache.backend == "memory":
            store = MemorySnapshotStore()
        else:
            store = FileSnapshotStore(config.home_path)
    cache = SnapshotCache(store, max_age=parse_duration(config.cache.max_age))

    synthesizer = FallbackSynthesizer(trading_hours=hours)
    instruments = build_instruments(config, synthesizer)
    limiter = RateLimiter(
        default_interval=duration_seconds(md.default_rate_limit),
        intervals={name: duration_seconds(v) for name, v in md.rate_limits.items()},
    )
    if sources is None:
        sources = build_sources(config, hours, limiter)

    def make_aggregator(registry) -> Aggregator:
        return Aggregator(
            instruments=instruments,
            sources=sources,
            synthesizer=synthesizer,
            limiter=limiter,
            cache=cache,
            registry=registry,
            max_retries=md.retry.max_retries,
            base_delay=md.retry.base_delay_seconds,
            fallback_threshold=md.fallback_threshold,
            recovery_probe_cycles=md.recovery_probe_cycles,
            quote_currency=md.quote_currency.upper(),
        )

    closers = [s.close for s in sources.values() if s is not None and hasattr(s, "close")]

    return MarketDataService(
        make_aggregator,
        cache,
        trading_hours=hours,
        open_interval=duration_seconds(config.scheduler.open_interval),
        closed_interval=duration_seconds(config.scheduler.closed_interval),
        closers=closers,
    )


async def run(config_path: str | None = None, env_path: str | None = None) -> None:
    """Initialize all components and start the server."""
    # Load configuration
    config = load_config(config_path=config_path, env_path=env_path)
    setup_logging(config.logging.level)
    logger = logging.getLogger("finsight")
    logger.info("Configuration loaded from %s", config.home_path)

    service = build_service(config)
    service.start()

    # Keep polling even when no HTTP client is streaming
    keep_warm = None
    if config.service.keep_warm:
        keep_warm = service.subscribe(lambda snapshot: None)

    # Create HTTP server
    app = create_app(config=config, service=service)

    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, config.server.host, config.server.port)
    await site.start()

    logger.info(
        "Finsight Feed running at http://%s:%d",
        config.server.host,
        config.server.port,
    )
    logger.info("State directory: %s", config.home_path)

    # Run until interrupted
    try:
        await asyncio.Event().wait()
    except (KeyboardInterrupt, asyncio.CancelledError):
        pass
    finally:
        logger.info("Shutting down...")
        if keep_warm is not None:
            keep_warm()
        await service.close()
        await runner.cleanup()
        logger.info("Shutdown complete")


def main() -> None:
    args = parse_args()
    setup_logging("INFO")
    try:
        asyncio.run(run(config_path=args.config, env_path=args.env))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
