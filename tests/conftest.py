import asyncio
import itertools
import json
from datetime import datetime, timezone

import pytest
import pytest_asyncio
import websockets
from websockets.exceptions import ConnectionClosed
from ocpp.routing import on
from ocpp.v16 import ChargePoint, call_result
from ocpp.v16.enums import Action, AuthorizationStatus, RegistrationStatus

from cpsim.connection import Connection
from cpsim.registry import DeviceRegistry


class FakeWebSocket:
    """Stands in for a live websocket; keeps every frame sent on it."""

    def __init__(self):
        self.sent = []
        self.closed = False

    async def send(self, frame):
        self.sent.append(json.loads(frame))

    async def close(self):
        self.closed = True

    def calls(self, action):
        return [m[3] for m in self.sent if m[0] == 2 and m[2] == action]

    def results(self):
        return [m for m in self.sent if m[0] == 3]


class FakeCentralSystem(ChargePoint):
    def __init__(self, id, connection, tx_ids):
        super().__init__(id, connection)
        self.tx_ids = tx_ids
        self.boot_notifications = asyncio.Queue()
        self.status_notifications = asyncio.Queue()
        self.start_requests = asyncio.Queue()
        self.stop_requests = asyncio.Queue()
        self.meter_values = asyncio.Queue()
        self.heartbeats = asyncio.Queue()

    @on(Action.boot_notification)
    async def on_boot_notification(self, **kwargs):
        await self.boot_notifications.put(kwargs)
        return call_result.BootNotification(
            current_time=datetime.now(timezone.utc).isoformat(),
            interval=30,
            status=RegistrationStatus.accepted,
        )

    @on(Action.status_notification)
    async def on_status_notification(self, **kwargs):
        await self.status_notifications.put(kwargs)
        return call_result.StatusNotification()

    @on(Action.heartbeat)
    async def on_heartbeat(self, **kwargs):
        await self.heartbeats.put(kwargs)
        return call_result.Heartbeat(current_time=datetime.now(timezone.utc).isoformat())

    @on(Action.start_transaction)
    async def on_start_transaction(self, **kwargs):
        await self.start_requests.put(kwargs)
        return call_result.StartTransaction(
            transaction_id=next(self.tx_ids),
            id_tag_info={"status": AuthorizationStatus.accepted},
        )

    # the simulator reports stopReason, which is not in the 1.6 schema
    @on(Action.stop_transaction, skip_schema_validation=True)
    async def on_stop_transaction(self, **kwargs):
        await self.stop_requests.put(kwargs)
        return call_result.StopTransaction()

    @on(Action.meter_values)
    async def on_meter_values(self, **kwargs):
        await self.meter_values.put(kwargs)
        return call_result.MeterValues()


class FakeCSMS:
    def __init__(self):
        self.url = None
        self.charge_points = {}
        self.connected = asyncio.Queue()
        self.tx_ids = itertools.count(1)

    async def handler(self, websocket, path=None):
        if path is None:
            try:
                path = websocket.request.path
            except AttributeError:
                path = websocket.path
        cp_id = path.rsplit("/", 1)[-1]
        cp = FakeCentralSystem(cp_id, websocket, self.tx_ids)
        self.charge_points[cp_id] = cp
        await self.connected.put(cp_id)
        try:
            await cp.start()
        except ConnectionClosed:
            pass

    async def next_charge_point(self, timeout=5):
        cp_id = await asyncio.wait_for(self.connected.get(), timeout=timeout)
        return self.charge_points[cp_id]


async def _wait_until(predicate, timeout=5.0):
    async def poll():
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout=timeout)


async def _drain(registry):
    """Let the after-reply work of inbound calls finish."""
    while registry.background_tasks:
        await asyncio.gather(*list(registry.background_tasks), return_exceptions=True)


def _attach(registry, device_id, connected=True):
    connection = Connection(device_id, registry.connection_manager.url_for(device_id))
    connection.websocket = FakeWebSocket()
    connection.is_connected = connected
    registry.connections[device_id] = connection
    return connection


@pytest.fixture
def wait_until():
    return _wait_until


@pytest.fixture
def drain():
    return _drain


@pytest.fixture
def attach():
    return _attach


@pytest_asyncio.fixture
async def registry():
    # port 9 (discard) is never served, tests that need a server use live_registry
    registry = DeviceRegistry(
        server_url="ws://127.0.0.1:9/ocpp",
        heartbeat_interval=60,
        meter_interval=60,
    )
    yield registry
    await registry.close()


@pytest_asyncio.fixture
async def csms():
    central = FakeCSMS()
    async with websockets.serve(central.handler, "127.0.0.1", 0, subprotocols=["ocpp1.6"]) as server:
        port = next(iter(server.sockets)).getsockname()[1]
        central.url = f"ws://127.0.0.1:{port}/ocpp"
        yield central


@pytest_asyncio.fixture
async def live_registry(csms):
    registry = DeviceRegistry(server_url=csms.url, heartbeat_interval=0.2, meter_interval=0.05)
    yield registry
    await registry.close()


async def bind_session(registry, device_id="CP1", connector_id=1, transaction_id=7, meter_start=1000):
    """Start a session on an attached connection and answer its StartTransaction."""
    await registry.start_charging(device_id, connector_id, "TAG1", meter_start=meter_start)
    pending = registry.connections[device_id].pending_start
    await registry.protocol.receive(
        json.dumps([3, pending.message_id, {"transactionId": transaction_id, "idTagInfo": {"status": "Accepted"}}]),
        device_id,
    )
    return registry.find_connector(device_id, connector_id)


@pytest.fixture
def bound_session():
    return bind_session
