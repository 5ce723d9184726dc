import asyncio
import itertools
import json
import logging
from datetime import datetime, timezone

import httpx
import pytest_asyncio
import websockets
from websockets.exceptions import ConnectionClosed
from ocpp.messages import MessageType
from ocpp.routing import on
from ocpp.v16 import ChargePoint, call_result
from ocpp.v16.enums import Action, AuthorizationStatus, RegistrationStatus

from cpsim.config import SimulatorConfig
from cpsim.control import create_app
from cpsim.evse import ChargePointSimulator


def _now():
    return datetime.now(timezone.utc).isoformat()


class FakeCentralSystem(ChargePoint):
    """Minimal CSMS that records everything the station sends."""

    def __init__(
        self,
        id,
        connection,
        boot_interval=300,
        authorize_status=AuthorizationStatus.accepted,
        unanswered=(),
    ):
        super().__init__(id, connection, response_timeout=5)
        self.unanswered = set(unanswered)
        self.ignored = asyncio.Queue()
        self.boot_interval = boot_interval
        self.authorize_status = authorize_status
        self.tx_ids = itertools.count(1)
        self.frames = []
        self.actions = []
        self.boot_notifications = asyncio.Queue()
        self.status_notifications = asyncio.Queue()
        self.authorize_requests = asyncio.Queue()
        self.start_requests = asyncio.Queue()
        self.stop_requests = asyncio.Queue()
        self.meter_values = asyncio.Queue()
        self.heartbeats = asyncio.Queue()
        self._raw_waiters = {}

    async def route_message(self, raw_msg):
        frame = json.loads(raw_msg)
        self.frames.append(frame)
        if frame[0] == MessageType.Call:
            self.actions.append(frame[2])
            if frame[2] in self.unanswered:
                self.ignored.put_nowait((asyncio.get_running_loop().time(), frame))
                return
        waiter = self._raw_waiters.pop(frame[1], None)
        if waiter is not None and frame[0] in (MessageType.CallResult, MessageType.CallError):
            waiter.set_result(frame)
            return
        await super().route_message(raw_msg)

    async def send_raw(self, action, payload, unique_id=None, timeout=5):
        """Send a CALL without schema validation and return the reply frame."""
        unique_id = unique_id or f"raw-{len(self.frames)}-{action}"
        waiter = asyncio.get_running_loop().create_future()
        self._raw_waiters[unique_id] = waiter
        await self._connection.send(json.dumps([MessageType.Call, unique_id, action, payload]))
        return await asyncio.wait_for(waiter, timeout)

    @on(Action.boot_notification)
    async def on_boot_notification(self, charge_point_model, charge_point_vendor, **kwargs):
        self.boot_notifications.put_nowait(
            {"charge_point_model": charge_point_model, "charge_point_vendor": charge_point_vendor, **kwargs}
        )
        return call_result.BootNotification(
            current_time=_now(), interval=self.boot_interval, status=RegistrationStatus.accepted
        )

    @on(Action.status_notification)
    async def on_status_notification(self, connector_id, error_code, status, **kwargs):
        self.status_notifications.put_nowait(
            {"connector_id": connector_id, "error_code": error_code, "status": status, **kwargs}
        )
        return call_result.StatusNotification()

    @on(Action.heartbeat)
    def on_heartbeat(self, **kwargs):
        self.heartbeats.put_nowait(asyncio.get_running_loop().time())
        return call_result.Heartbeat(current_time=_now())

    @on(Action.authorize)
    async def on_authorize(self, id_tag, **kwargs):
        self.authorize_requests.put_nowait({"id_tag": id_tag})
        return call_result.Authorize(id_tag_info={"status": self.authorize_status})

    @on(Action.start_transaction)
    async def on_start_transaction(self, connector_id, id_tag, meter_start, timestamp, **kwargs):
        tx_id = next(self.tx_ids)
        self.start_requests.put_nowait(
            {"connector_id": connector_id, "id_tag": id_tag, "meter_start": meter_start, "transaction_id": tx_id}
        )
        return call_result.StartTransaction(
            transaction_id=tx_id, id_tag_info={"status": AuthorizationStatus.accepted}
        )

    @on(Action.meter_values)
    async def on_meter_values(self, connector_id, meter_value, **kwargs):
        self.meter_values.put_nowait({"connector_id": connector_id, "meter_value": meter_value, **kwargs})
        return call_result.MeterValues()

    @on(Action.stop_transaction)
    async def on_stop_transaction(self, meter_stop, timestamp, transaction_id, **kwargs):
        self.stop_requests.put_nowait(
            {"meter_stop": meter_stop, "transaction_id": transaction_id, **kwargs}
        )
        return call_result.StopTransaction(id_tag_info={"status": AuthorizationStatus.accepted})


def _request_path(websocket):
    request = getattr(websocket, "request", None)
    if request is not None:
        return request.path
    return websocket.path


class FakeCSMS:
    """WebSocket server on an ephemeral port; one FakeCentralSystem per connection."""

    def __init__(self, **cp_options):
        self.cp_options = cp_options
        self.cp = None
        self.paths = []
        self.sessions = asyncio.Queue()
        self.websocket = None
        self._server = None

    @property
    def url(self):
        host, port = self._server.sockets[0].getsockname()[:2]
        return f"ws://{host}:{port}/ocpp"

    async def _on_connect(self, websocket, *args):
        self.paths.append(_request_path(websocket))
        self.websocket = websocket
        self.cp = FakeCentralSystem(self.paths[-1].rsplit("/", 1)[-1], websocket, **self.cp_options)
        self.sessions.put_nowait(self.cp)
        try:
            await self.cp.start()
        except ConnectionClosed:
            pass

    async def start(self):
        self._server = await websockets.serve(
            self._on_connect, "127.0.0.1", 0, subprotocols=["ocpp1.6"]
        )
        return self

    async def drop_connection(self):
        await self.websocket.close()

    async def stop(self):
        self._server.close()
        await self._server.wait_closed()


async def wait_until(predicate, timeout=5.0, interval=0.02):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


def fast_config(server_url, **overrides):
    options = dict(
        server_url=server_url,
        heartbeat_interval=300,
        meter_start_wh=10000,
        meter_interval=60.0,
        status_interval=60.0,
        registration_grace=0.05,
        remote_start_delay=0.05,
        start_delay=0.01,
        stop_delay=0.05,
        authorize_timeout=2.0,
        call_timeout=2.0,
        shutdown_grace=1.0,
        charge_delay=0.05,
        meter_samples=3,
        sample_gap=0.05,
        reconnect_base_delay=0.05,
        reconnect_max_delay=0.2,
    )
    options.update(overrides)
    return SimulatorConfig(**options)


@pytest_asyncio.fixture
async def simulator_factory():
    started = []

    async def factory(csms_options=None, **overrides):
        csms = await FakeCSMS(**(csms_options or {})).start()
        sim = ChargePointSimulator(fast_config(csms.url, **overrides), logger=logging.getLogger("cpsim.test"))
        task = asyncio.create_task(sim.run())
        started.append((csms, sim, task))
        await wait_until(lambda: sim.established or task.done())
        transport = httpx.ASGITransport(app=create_app(sim))
        client = httpx.AsyncClient(transport=transport, base_url="http://test")
        started[-1] += (client,)
        return {"client": client, "csms": csms, "evse": sim, "task": task}

    yield factory

    for csms, sim, task, *rest in started:
        for client in rest:
            await client.aclose()
        task.cancel()
        try:
            await task
        except (asyncio.CancelledError, Exception):
            pass
        await csms.stop()


@pytest_asyncio.fixture
async def simulator(simulator_factory):
    return await simulator_factory()
