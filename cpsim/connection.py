import asyncio
import logging
from typing import Optional

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException
from ocpp.v16.enums import Action

from .config import (
    CHARGE_POINT_MODEL,
    CHARGE_POINT_VENDOR,
    FIRMWARE_VERSION,
    METER_TYPE,
    OCPP_SUBPROTOCOL,
)
from .protocol import PendingStart
from .state_machine import ConnectorStatus


def boot_notification_payload(device_id: str) -> dict:
    return {
        "chargePointVendor": CHARGE_POINT_VENDOR,
        "chargePointModel": CHARGE_POINT_MODEL,
        "chargePointSerialNumber": device_id,
        "chargeBoxSerialNumber": device_id,
        "firmwareVersion": FIRMWARE_VERSION,
        "iccid": "",
        "imsi": "",
        "meterType": METER_TYPE,
        "meterSerialNumber": f"METER_{device_id}",
    }


class Connection:
    """Transport state of one charge point."""

    def __init__(self, device_id: str, url: str):
        self.device_id = device_id
        self.url = url
        self.websocket = None
        self.is_connected = False
        self.task: Optional[asyncio.Task] = None
        self.heartbeat_task: Optional[asyncio.Task] = None
        self.pending_start: Optional[PendingStart] = None
        self.opened = asyncio.Event()
        self.closed = asyncio.Event()

    @property
    def is_open(self) -> bool:
        return self.websocket is not None and self.is_connected

    async def transmit(self, frame: str) -> bool:
        if self.websocket is None:
            return False
        try:
            await self.websocket.send(frame)
        except ConnectionClosed as e:
            logging.warning(f"Send failed, connection for {self.device_id} is closed: {e}")
            self.is_connected = False
            return False
        return True

    def stop_heartbeat(self) -> None:
        if self.heartbeat_task is not None:
            self.heartbeat_task.cancel()
            self.heartbeat_task = None
            logging.info(f"Stopped heartbeat for {self.device_id}")

    async def close(self) -> None:
        self.is_connected = False
        self.stop_heartbeat()
        if self.task is not None and not self.task.done():
            # leaving the websockets context closes the socket
            self.task.cancel()
            await asyncio.gather(self.task, return_exceptions=True)
        elif self.websocket is not None:
            await self.websocket.close()
        self.closed.set()


class ConnectionManager:
    def __init__(self, registry, server_url: str, heartbeat_interval: float):
        self.registry = registry
        self.server_url = server_url
        self.heartbeat_interval = heartbeat_interval

    def url_for(self, device_id: str) -> str:
        return f"{self.server_url.rstrip('/')}/{device_id}"

    async def connect(self, device_id: str) -> Connection:
        """(Re)connect a charge point; any previous connection is torn down first."""
        if device_id in self.registry.connections:
            logging.info(f"Closing existing connection for {device_id}")
            await self.disconnect(device_id)

        connection = Connection(device_id, self.url_for(device_id))
        self.registry.connections[device_id] = connection
        connection.task = asyncio.create_task(self._run(connection), name=f"connection-{device_id}")
        connection.task.add_done_callback(self._connection_done)
        return connection

    @staticmethod
    def _connection_done(task: asyncio.Task) -> None:
        if not task.cancelled() and task.exception() is not None:
            logging.error(f"Connection task {task.get_name()} failed: {task.exception()!r}")

    async def disconnect(self, device_id: str) -> bool:
        connection = self.registry.connections.pop(device_id, None)
        if connection is None:
            return False
        await connection.close()
        logging.info(f"Disconnected from OCPP server for {device_id}")
        return True

    async def _run(self, connection: Connection) -> None:
        device_id = connection.device_id
        logging.info(f"Connecting to OCPP server: {connection.url}")
        try:
            async with websockets.connect(connection.url, subprotocols=[OCPP_SUBPROTOCOL]) as ws:
                connection.websocket = ws
                connection.is_connected = True
                logging.info(f"Connected to OCPP server for {device_id}")
                await self._on_open(connection)
                async for raw in ws:
                    try:
                        await self.registry.protocol.receive(raw, device_id)
                    except Exception:
                        logging.exception(f"Error handling OCPP message for {device_id}")
            logging.info(f"Connection to OCPP server for {device_id} closed")
        except ConnectionClosed as e:
            logging.warning(f"Connection to OCPP server for {device_id} lost: {e}")
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            logging.error(f"WebSocket error for {device_id}: {e}")
        finally:
            connection.is_connected = False
            connection.stop_heartbeat()
            connection.closed.set()

    async def _on_open(self, connection: Connection) -> None:
        device_id = connection.device_id
        async with self.registry.lock(device_id):
            await self.registry.protocol.send(
                Action.boot_notification, boot_notification_payload(device_id), device_id
            )
            cp = self.registry.charge_points.get(device_id)
            for cid in (cp.connectors if cp else {}):
                await self.registry.transactions.send_status_notification(
                    device_id, cid, ConnectorStatus.AVAILABLE
                )
        self.start_heartbeat(connection)
        connection.opened.set()

    def start_heartbeat(self, connection: Connection) -> None:
        connection.stop_heartbeat()
        connection.heartbeat_task = asyncio.create_task(
            self.send_heartbeat_loop(connection), name=f"heartbeat-{connection.device_id}"
        )
        logging.info(f"Started heartbeat for {connection.device_id}")

    async def send_heartbeat_loop(self, connection: Connection) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            if not connection.is_connected:
                return
            await self.registry.protocol.send(Action.heartbeat, {}, connection.device_id)
