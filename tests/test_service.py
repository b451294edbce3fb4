import asyncio
from datetime import datetime, timezone

import pytest

from conftest import OPEN_TIME, StubSource, equity, make_quote
from core.errors import AggregationError, FetchErrorKind
from core.models.market import Snapshot
from engine.service import MarketDataService
from scheduler.runner import MarketScheduler
from test_scheduler import ScriptedSleep, settle


@pytest.fixture
def make_service(build_aggregator, cache, hours, synthesizer):
    synthesizer.register("AAA", 100)
    synthesizer.register("BBB", 50)

    def _make(script=None, instruments=None, closers=None):
        source = StubSource("stub", "equities", script or {"BBB": [make_quote("BBB", 52, 2)]})

        def scheduler_factory(cycle, **kwargs):
            return MarketScheduler(cycle, clock=lambda: OPEN_TIME, sleep=ScriptedSleep(free=0), **kwargs)

        service = MarketDataService(
            lambda registry: build_aggregator(
                instruments or [equity("AAA"), equity("BBB")],
                {"equities": source},
                registry=registry,
                max_retries=0,
            ),
            cache,
            trading_hours=hours,
            scheduler_factory=scheduler_factory,
            closers=closers,
        )
        return service, source

    return _make


class TestMarketDataService:

    @pytest.mark.asyncio
    async def test_connection_status_lifecycle(self, make_service):
        service, _ = make_service()
        assert service.connection_status == "loading"

        await service.force_refresh()
        assert service.connection_status == "connected"

    @pytest.mark.asyncio
    async def test_status_error_when_nothing_live(self, make_service):
        service, _ = make_service(script={"BBB": [FetchErrorKind.TIMEOUT]})

        snapshot = await service.force_refresh()

        assert service.connection_status == "error"
        assert len(snapshot.quotes) == 2

    @pytest.mark.asyncio
    async def test_status_error_on_aggregation_error(self, make_service):
        service, _ = make_service(instruments=[equity("ZZZ")])

        with pytest.raises(AggregationError):
            await service.force_refresh()
        assert service.connection_status == "error"

    @pytest.mark.asyncio
    async def test_subscribe_starts_and_last_unsubscribe_stops(self, make_service):
        service, _ = make_service()
        received = []

        unsubscribe = service.subscribe(received.append)
        await settle()

        assert service.scheduler.is_running
        assert len(received) == 1
        assert service.subscriber_count == 1

        unsubscribe()
        unsubscribe()
        assert not service.scheduler.is_running
        assert service.subscriber_count == 0
        await service.close()

    @pytest.mark.asyncio
    async def test_cached_snapshot_is_delivered_asynchronously_first(self, make_service, cache):
        cached = Snapshot(quotes=(make_quote("AAA", 99, -1),), captured_at=datetime.now(timezone.utc))
        cache.save(cached)
        service, _ = make_service()
        assert service.start() == cached

        received = []
        unsubscribe = service.subscribe(received.append)
        assert received == []

        await settle()

        assert received[0] == cached
        assert len(received) == 2
        assert received[1] is service.latest
        unsubscribe()
        await service.close()

    @pytest.mark.asyncio
    async def test_unsubscribe_by_handle(self, make_service):
        service, _ = make_service()
        unsubscribe = service.subscribe(lambda s: None)

        service.unsubscribe(unsubscribe.handle)

        assert service.subscriber_count == 0
        await service.close()

    @pytest.mark.asyncio
    async def test_queries(self, make_service):
        service, _ = make_service()
        assert service.get_sentiment().label == "neutral"
        assert service.cache_info()["has_cache"] is False

        snapshot = await service.force_refresh()

        assert service.get_sentiment() == snapshot.sentiment
        assert service.cache_info()["has_cache"] is True
        assert service.is_market_open(OPEN_TIME) is True
        assert service.market_session(OPEN_TIME)["session"] == "REGULAR"

    @pytest.mark.asyncio
    async def test_close_runs_closers(self, make_service):
        closed = []

        async def closer():
            closed.append(1)

        service, _ = make_service(closers=[closer])
        await service.close()
        assert closed == [1]

    @pytest.mark.asyncio
    async def test_refresh_waits_for_in_flight_cycle(self, make_service):
        service, source = make_service()

        results = await asyncio.gather(service.force_refresh(), service.force_refresh())

        assert results[0] is not results[1]
        assert service.aggregator.last_metrics.cycle == 2

    @pytest.mark.asyncio
    async def test_status_error_on_unexpected_failure(self, make_service, store, monkeypatch):
        service, _ = make_service()
        await service.force_refresh()
        assert service.connection_status == "connected"

        def broken_write(key, blob):
            raise RuntimeError("serializer blew up")

        monkeypatch.setattr(store, "write", broken_write)

        with pytest.raises(RuntimeError):
            await service.force_refresh()
        assert service.connection_status == "error"
