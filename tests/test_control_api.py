import asyncio

import httpx
import pytest
from websockets.exceptions import ConnectionClosed

from cpsim.control import create_app
from cpsim.evse import ChargePointSimulator

from conftest import fast_config


@pytest.mark.asyncio
async def test_health_endpoint(simulator):
    client = simulator["client"]
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"ok": True, "connected": True}


@pytest.mark.asyncio
async def test_state_endpoint(simulator):
    resp = await simulator["client"].get("/state")
    body = resp.json()
    assert body["chargePointId"] == "CP001"
    assert body["connected"] is True
    assert body["transaction"] is None
    assert body["connectors"] == {"0": "Available", "1": "Available"}
    assert body["meterWh"] == 10000


@pytest.mark.asyncio
async def test_authorize_endpoint(simulator):
    client = simulator["client"]
    csms_cp = simulator["csms"].cp

    resp = await client.post("/authorize", params={"idTag": "CARD1"})
    assert resp.json() == {"ok": True, "status": "Accepted"}
    auth = await asyncio.wait_for(csms_cp.authorize_requests.get(), timeout=5)
    assert auth["id_tag"] == "CARD1"


@pytest.mark.asyncio
async def test_full_transaction_endpoint(simulator):
    client = simulator["client"]
    csms_cp = simulator["csms"].cp

    resp = await client.post("/transaction")
    body = resp.json()
    assert body["ok"] is True
    tx_id = body["transactionId"]

    start = await asyncio.wait_for(csms_cp.start_requests.get(), timeout=5)
    assert start["id_tag"] == "abc123"
    assert start["transaction_id"] == tx_id
    for _ in range(3):
        mv = await asyncio.wait_for(csms_cp.meter_values.get(), timeout=5)
        assert mv["transaction_id"] == tx_id
    stop = await asyncio.wait_for(csms_cp.stop_requests.get(), timeout=5)
    assert stop["reason"] == "Local"
    assert simulator["evse"].state.transaction is None


@pytest.mark.asyncio
async def test_status_endpoint(simulator):
    client = simulator["client"]
    csms_cp = simulator["csms"].cp
    for _ in range(2):
        await asyncio.wait_for(csms_cp.status_notifications.get(), timeout=5)

    resp = await client.post("/status/Faulted")
    assert resp.json()["ok"] is True
    sn = await asyncio.wait_for(csms_cp.status_notifications.get(), timeout=5)
    assert sn["connector_id"] == 1
    assert sn["status"] == "Faulted"
    assert simulator["evse"].state.statuses[1] == "Faulted"


@pytest.mark.asyncio
async def test_bad_status_and_connector(simulator):
    client = simulator["client"]

    resp = await client.post("/status/Exploded")
    assert resp.status_code == 400

    resp = await client.post("/status/Available", params={"connectorId": 3})
    assert resp.status_code == 404

    resp = await client.post("/transaction", params={"connectorId": 3})
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_not_connected_returns_503():
    sim = ChargePointSimulator(fast_config("ws://127.0.0.1:9"))
    transport = httpx.ASGITransport(app=create_app(sim))
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        assert (await client.get("/health")).json() == {"ok": True, "connected": False}
        assert (await client.post("/authorize")).status_code == 503
        assert (await client.post("/transaction")).status_code == 503
        assert (await client.post("/status/Faulted")).status_code == 503


@pytest.mark.asyncio
async def test_connection_lost_mid_operation_returns_503():
    sim = ChargePointSimulator(fast_config("ws://127.0.0.1:9"))

    async def dropped(*args, **kwargs):
        raise ConnectionClosed(None, None)

    sim.trigger_authorize = dropped
    sim.run_full_transaction = dropped
    sim.set_connector_status = dropped

    transport = httpx.ASGITransport(app=create_app(sim))
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        assert (await client.post("/authorize")).status_code == 503
        assert (await client.post("/transaction")).status_code == 503
        assert (await client.post("/status/Faulted")).status_code == 503
