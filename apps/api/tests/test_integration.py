"""
API Integration Tests for W3Hub Asset Tracker
Tests API endpoints against a temp SQLite store and a fake chain backend
"""
from dataclasses import replace
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from fastapi_cache import FastAPICache
from fastapi_cache.backends.inmemory import InMemoryBackend
from httpx import ASGITransport, AsyncClient
from sqlalchemy import update

from conftest import ADDR_A, ADDR_B, RecordingNotifier, make_asset, make_tx
from w3hub.config import Settings, get_settings
from w3hub.exceptions import BackendUnavailable, NotFound, UnknownChain
from w3hub.main import app
from w3hub.models import WatchTarget
from w3hub.services.activity_detector import AlertEvent, AlertKind
from w3hub.services.query_service import QueryFacade
from w3hub.services.tracking_engine import EngineConfig, TrackingEngine
from w3hub.services.websocket_manager import ConnectionManager

ADMIN_KEY = "test-admin-key"
ADMIN = {"X-Admin-Key": ADMIN_KEY}


def admin_settings() -> Settings:
    return Settings(_env_file=None, admin_api_key=ADMIN_KEY, cache_enabled=False)


# ============== Test Configuration ==============

@pytest.fixture
def facade(registry, store):
    return QueryFacade(registry, store)


@pytest.fixture
async def client(registry, store, facade):
    """API client wired to test services"""
    FastAPICache.init(InMemoryBackend(), prefix="w3hub-test", enable=False)
    engine = TrackingEngine(
        registry, store, RecordingNotifier(),
        config=EngineConfig(poll_interval=0.05, max_backoff=0.1, shutdown_grace=1.0),
    )
    app.state.engine = engine
    app.state.facade = facade
    app.state.notifier = None
    app.dependency_overrides[get_settings] = admin_settings

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    await engine.stop()
    app.dependency_overrides.clear()
    app.state.engine = None
    app.state.facade = None


# ============== Health ==============

class TestHealthEndpoints:
    """Test health check endpoints"""

    async def test_health_check(self, client):
        """Test basic health check"""
        response = await client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["engine"]["chains"] == ["ethereum"]

    async def test_api_info(self, client):
        response = await client.get("/api/v1")
        assert response.status_code == 200
        assert response.json()["websocket"] == "/api/v1/live/alerts"


# ============== Assets ==============

class TestAssetsAPI:
    """Test live and stale asset queries"""

    async def test_live_assets(self, client, fake_client):
        fake_client.asset_script[ADDR_A] = [[make_asset(ADDR_A, "ETH", "1.5"), make_asset(ADDR_A, "USDC", "20", contract="0xusdc")]]

        response = await client.get(f"/api/v1/assets/ethereum/{ADDR_A}")

        assert response.status_code == 200
        data = response.json()
        assert data["source"] == "live"
        assert data["total"] == 2
        assert [(i["symbol"], Decimal(i["quantity"])) for i in data["items"]] == [
            ("ETH", Decimal("1.5")),
            ("USDC", Decimal("20")),
        ]

    async def test_stale_fallback(self, client, fake_client, store):
        await store.add_target("ethereum", ADDR_A)
        await store.upsert("ethereum", ADDR_A, [make_asset(ADDR_A, "ETH", "2")])
        fake_client.asset_script[ADDR_A] = [BackendUnavailable("rpc down")]

        response = await client.get(f"/api/v1/assets/ethereum/{ADDR_A}")

        assert response.status_code == 200
        data = response.json()
        assert data["source"] == "stale"
        assert data["error"] == "rpc down"
        assert data["age_seconds"] >= 0
        assert Decimal(data["items"][0]["quantity"]) == Decimal("2")

    async def test_backend_down_without_snapshot(self, client, fake_client):
        fake_client.asset_script[ADDR_A] = [BackendUnavailable("rpc down")]

        response = await client.get(f"/api/v1/assets/ethereum/{ADDR_A}")

        assert response.status_code == 503
        assert response.json()["error"] == "BackendUnavailable"

    async def test_unknown_chain(self, client):
        response = await client.get(f"/api/v1/assets/solana/{ADDR_A}")
        assert response.status_code == 404
        assert response.json()["error"] == "UnknownChain"

    async def test_invalid_address(self, client, fake_client):
        response = await client.get("/api/v1/assets/ethereum/nope")
        assert response.status_code == 400
        assert fake_client.asset_calls["nope"] == 0

    async def test_balance(self, client, fake_client):
        fake_client.asset_script[ADDR_A] = [[make_asset(ADDR_A, "ETH", "0.25")]]

        response = await client.get(f"/api/v1/assets/ethereum/{ADDR_A}/balance")

        assert response.status_code == 200
        data = response.json()
        assert data["symbol"] == "ETH"
        assert Decimal(data["balance"]) == Decimal("0.25")
        assert data["source"] == "live"


# ============== History ==============

class TestHistoryAPI:
    """Test stored transaction history"""

    async def test_history_newest_first(self, client, store):
        target, _ = await store.add_target("ethereum", ADDR_A)
        await store.append_transactions("ethereum", ADDR_A, [make_tx(f"0x{i:02x}", i) for i in range(1, 4)])

        response = await client.get(f"/api/v1/assets/history/{target.id}", params={"limit": 2})

        assert response.status_code == 200
        data = response.json()
        assert data["chain"] == "ethereum"
        assert data["address"] == ADDR_A
        assert [t["block_height"] for t in data["items"]] == [3, 2]
        assert data["total"] == 3
        assert data["has_more"] is True

    async def test_history_includes_outgoing(self, client, store):
        target, _ = await store.add_target("ethereum", ADDR_B)
        outgoing = replace(make_tx("0x99", 9), from_address=ADDR_B, to_address=ADDR_A)
        await store.append_transactions("ethereum", ADDR_A, [outgoing])

        response = await client.get(f"/api/v1/assets/history/{target.id}")
        assert [t["hash"] for t in response.json()["items"]] == ["0x99"]

    async def test_history_not_found(self, client):
        response = await client.get("/api/v1/assets/history/999")
        assert response.status_code == 404
        assert response.json()["error"] == "NotFound"

    async def test_history_invalid_pagination(self, client):
        response = await client.get("/api/v1/assets/history/1", params={"limit": 0})
        assert response.status_code == 422


# ============== Tracking ==============

class TestTrackingAPI:
    """Test admin watch target management"""

    async def test_requires_admin_key(self, client):
        response = await client.post("/api/v1/tracking", json={"chain": "ethereum", "addresses": [ADDR_A]})
        assert response.status_code == 403

        response = await client.get("/api/v1/tracking", headers={"X-Admin-Key": "wrong"})
        assert response.status_code == 403

    async def test_track_list_untrack(self, client):
        response = await client.post(
            "/api/v1/tracking", json={"chain": "Ethereum", "addresses": [ADDR_A, ADDR_A]}, headers=ADMIN
        )
        assert response.status_code == 201
        assert response.json() == {"chain": "ethereum", "started": [ADDR_A], "already_watched": []}

        response = await client.get("/api/v1/tracking", headers=ADMIN)
        assert response.status_code == 200
        items = response.json()["items"]
        assert [(i["chain"], i["address"], i["is_active"]) for i in items] == [("ethereum", ADDR_A, True)]

        response = await client.delete(f"/api/v1/tracking/ethereum/{ADDR_A}", headers=ADMIN)
        assert response.status_code == 204

        response = await client.delete(f"/api/v1/tracking/ethereum/{ADDR_A}", headers=ADMIN)
        assert response.status_code == 404

    async def test_track_unknown_chain(self, client, store):
        response = await client.post(
            "/api/v1/tracking", json={"chain": "solana", "addresses": [ADDR_A]}, headers=ADMIN
        )
        assert response.status_code == 404
        assert await store.list_targets() == []

    async def test_track_malformed_request(self, client):
        response = await client.post(
            "/api/v1/tracking", json={"chain": "not a chain!", "addresses": [ADDR_A]}, headers=ADMIN
        )
        assert response.status_code == 422

        response = await client.post(
            "/api/v1/tracking", json={"chain": "ethereum", "addresses": []}, headers=ADMIN
        )
        assert response.status_code == 422

    async def test_status(self, client):
        await client.post("/api/v1/tracking", json={"chain": "ethereum", "addresses": [ADDR_A]}, headers=ADMIN)

        response = await client.get("/api/v1/tracking/status", headers=ADMIN)

        assert response.status_code == 200
        data = response.json()
        assert data["health"]["active_watches"] == 1
        assert data["watches"][0]["address"] == ADDR_A


# ============== Query Facade ==============

class TestQueryFacade:
    """Test the read path directly"""

    async def test_stale_too_old(self, registry, store, session_maker, fake_client):
        await store.add_target("ethereum", ADDR_A)
        await store.upsert("ethereum", ADDR_A, [make_asset(ADDR_A, "ETH", "2")])
        async with session_maker() as session:
            async with session.begin():
                await session.execute(
                    update(WatchTarget).values(last_synced_at=datetime.utcnow() - timedelta(hours=2))
                )
        fake_client.asset_script[ADDR_A] = [BackendUnavailable("rpc down")]

        with pytest.raises(BackendUnavailable):
            await QueryFacade(registry, store, stale_max_age_seconds=3600).get_assets("ethereum", ADDR_A)

        view = await QueryFacade(registry, store).get_assets("ethereum", ADDR_A)
        assert view.is_stale
        assert view.age_seconds >= 7200 - 5

    async def test_stale_balance_from_snapshot(self, facade, store, fake_client):
        await store.add_target("ethereum", ADDR_A)
        await store.upsert("ethereum", ADDR_A, [make_asset(ADDR_A, "ETH", "3")])
        fake_client.asset_script[ADDR_A] = [BackendUnavailable("rpc down")]

        view = await facade.get_balance("ethereum", ADDR_A)
        assert view.source == "stale"
        assert view.balance == Decimal("3")

    async def test_unknown_chain_and_target(self, facade):
        with pytest.raises(UnknownChain):
            await facade.get_assets("solana", ADDR_A)
        with pytest.raises(NotFound):
            await facade.get_asset_history(12345)


# ============== WebSocket ==============

class FakeSocket:
    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail

    async def send_json(self, message):
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(message)


class TestWebSocket:
    """Test live alert broadcasting"""

    def alert(self, chain="ethereum", address=ADDR_A):
        return AlertEvent(chain=chain, address=address, kind=AlertKind.NEW_TRANSACTION, payload={"hash": "0x1"})

    async def test_send_broadcasts_and_drops_dead_sockets(self):
        manager = ConnectionManager()
        alive, dead = FakeSocket(), FakeSocket(fail=True)
        manager.subscriptions[alive] = set()
        manager.subscriptions[dead] = set()

        result = await manager.send(self.alert())

        assert result == {"success": True, "delivered": 1}
        assert alive.sent[0]["type"] == "alert"
        assert alive.sent[0]["data"]["kind"] == "new-transaction"
        assert manager.connection_count == 1

    async def test_subscriptions_filter_alerts(self):
        manager = ConnectionManager()
        whole_chain, one_address, other_chain = FakeSocket(), FakeSocket(), FakeSocket()
        manager.subscribe(whole_chain, "Ethereum")
        manager.subscribe(one_address, "ethereum", ADDR_B.upper().replace("0X", "0x"))
        manager.subscribe(other_chain, "base")

        await manager.send(self.alert(address=ADDR_A))
        await manager.send(self.alert(address=ADDR_B))

        assert len(whole_chain.sent) == 2
        assert [m["data"]["address"] for m in one_address.sent] == [ADDR_B]
        assert other_chain.sent == []

        manager.unsubscribe(one_address, "ethereum", ADDR_B)
        await manager.send(self.alert(address=ADDR_A))
        assert len(one_address.sent) == 2

    def test_websocket_connect(self):
        client = TestClient(app)
        with client.websocket_connect("/api/v1/live/alerts") as websocket:
            assert websocket.receive_json()["type"] == "connected"
            websocket.send_json({"action": "ping"})
            assert websocket.receive_json()["type"] == "pong"

            websocket.send_json({"action": "subscribe", "chain": "Base"})
            assert websocket.receive_json() == {"type": "subscribed", "chain": "base", "address": None}

            websocket.send_json({"action": "subscribe"})
            assert websocket.receive_json()["type"] == "error"

            websocket.send_text("not json")
            assert websocket.receive_json()["message"] == "Invalid JSON message"
