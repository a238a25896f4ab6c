"""
Tests for the aiohttp routes and subscriber websocket.
"""

import pytest
from aiohttp import test_utils

from fakes import FakePollTransport, FakePushTransport, FakeStore, wait_until
from socketmetrics.engine import AggregationConfig, EngineConfig, SocketMetricsEngine
from socketmetrics.server import build_app


def _engine(store, config=None):
    return SocketMetricsEngine(
        config, store=store, push_transport=FakePushTransport(), poll_transport=FakePollTransport()
    )


class TestHttpRoutes:
    """Read-only JSON routes."""

    @pytest.mark.asyncio
    async def test_index_lists_endpoints(self):
        """The root route describes the service."""
        app = build_app(_engine(FakeStore()), manage_engine=False)

        async with test_utils.TestClient(test_utils.TestServer(app)) as client:
            resp = await client.get("/")
            body = await resp.json()

        assert resp.status == 200
        assert body["endpoints"]["websocket"] == "/ws"

    @pytest.mark.asyncio
    async def test_latest_404_when_empty(self):
        """No record yet: 404 with success false."""
        app = build_app(_engine(FakeStore()), manage_engine=False)

        async with test_utils.TestClient(test_utils.TestServer(app)) as client:
            resp = await client.get("/api/metrics/latest")
            body = await resp.json()

        assert resp.status == 404
        assert body["success"] is False

    @pytest.mark.asyncio
    async def test_latest_returns_and_rebroadcasts(self, make_record):
        """The latest record is returned and pushed to connected subscribers."""
        store = FakeStore()
        await store.append(make_record(timestamp_ms=1_700_000_000_000, price=321.0))
        engine = _engine(store)
        app = build_app(engine, manage_engine=False)

        async with test_utils.TestClient(test_utils.TestServer(app)) as client:
            ws = await client.ws_connect("/ws")
            hello = await ws.receive_json(timeout=2)
            await wait_until(lambda: engine.hub.count == 1)

            resp = await client.get("/api/metrics/latest")
            body = await resp.json()
            pushed = await ws.receive_json(timeout=2)
            await ws.close()

        assert resp.status == 200
        assert body["success"] is True
        assert body["data"]["price"] == 321.0
        assert body["data"]["timestamp"] == "2023-11-14T22:13:20.000Z"
        assert hello["type"] == "latest_data"
        assert pushed == {"type": "aggregated_data", "data": body["data"]}

    @pytest.mark.asyncio
    async def test_history(self, make_record):
        """History is newest first and honors limit."""
        store = FakeStore()
        for ts in (1_000, 3_000, 2_000):
            await store.append(make_record(timestamp_ms=ts))
        app = build_app(_engine(store), manage_engine=False)

        async with test_utils.TestClient(test_utils.TestServer(app)) as client:
            resp = await client.get("/api/metrics/history", params={"limit": "2"})
            body = await resp.json()
            default_resp = await client.get("/api/metrics/history")
            default_body = await default_resp.json()
            bad_resp = await client.get("/api/metrics/history", params={"limit": "abc"})

        assert body["count"] == 2
        assert [r["timestamp"] for r in body["data"]] == ["1970-01-01T00:00:03.000Z", "1970-01-01T00:00:02.000Z"]
        assert default_body["count"] == 3
        assert bad_resp.status == 400

    @pytest.mark.asyncio
    async def test_store_failure_is_500(self):
        """Store errors map to 500 with success false."""
        store = FakeStore()
        store.fail_read = True
        app = build_app(_engine(store), manage_engine=False)

        async with test_utils.TestClient(test_utils.TestServer(app)) as client:
            latest = await client.get("/api/metrics/latest")
            latest_body = await latest.json()
            history = await client.get("/api/metrics/history")

        assert latest.status == 500
        assert history.status == 500
        assert latest_body["success"] is False

    @pytest.mark.asyncio
    async def test_slow_store_is_500(self, make_record):
        """A store read that outlives store_timeout_s fails the request instead of hanging it."""
        store = FakeStore()
        await store.append(make_record())
        store.read_delay = 5.0
        config = EngineConfig(aggregation=AggregationConfig(store_timeout_s=0.05))
        app = build_app(_engine(store, config), manage_engine=False)

        async with test_utils.TestClient(test_utils.TestServer(app)) as client:
            latest = await client.get("/api/metrics/latest")
            history = await client.get("/api/metrics/history")

        assert latest.status == 500
        assert history.status == 500

    @pytest.mark.asyncio
    async def test_status(self):
        """Status reports feed and subscriber counters."""
        app = build_app(_engine(FakeStore()), manage_engine=False)

        async with test_utils.TestClient(test_utils.TestServer(app)) as client:
            resp = await client.get("/api/metrics/status")
            body = await resp.json()

        status = body["status"]
        assert body["success"] is True
        assert status["feedConnected"] is False
        assert status["feedState"] == "stopped"
        assert status["clientConnections"] == 0
        assert status["dataBufferSize"] == 0
        assert status["lastAggregation"] is None
        assert "metrics" in status


class TestSubscriberSocket:
    """The /ws endpoint."""

    @pytest.mark.asyncio
    async def test_aggregated_frames_and_disconnect(self, make_record):
        """A subscriber receives published records and is removed when it disconnects."""
        engine = _engine(FakeStore())
        app = build_app(engine, manage_engine=False)

        async with test_utils.TestClient(test_utils.TestServer(app)) as client:
            ws = await client.ws_connect("/ws")
            await wait_until(lambda: engine.hub.count == 1)

            delivered = await engine.hub.publish(make_record(price=77.0))
            frame = await ws.receive_json(timeout=2)

            await ws.close()
            await wait_until(lambda: engine.hub.count == 0)

        assert delivered == 1
        assert frame["type"] == "aggregated_data"
        assert frame["data"]["price"] == 77.0
