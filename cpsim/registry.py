"""The set of simulated charge points and everything running on their behalf.

A DeviceRegistry is created once per process and handed to the control
plane. It owns the charge point models, their connections, the meter tasks,
the message log and one asyncio.Lock per device; all changes to a device's
connector and transaction state happen under that lock.
"""
import asyncio
import logging
from typing import Dict, List, Optional, Set, Tuple

from .config import (
    DEFAULT_CONNECTOR_TYPE,
    DEFAULT_ID_TAG,
    DEFAULT_POWER_KW,
    HEARTBEAT_INTERVAL_SEC,
    MESSAGE_LOG_LIMIT,
    METER_INTERVAL_SEC,
    OCPP_SERVER_URL,
)
from .connection import Connection, ConnectionManager
from .errors import (
    InvalidRequestError,
    InvalidStatusError,
    NotConnectedError,
    UnknownConnectorError,
    UnknownDeviceError,
)
from .message_log import MessageLog
from .meter import MeterSimulator
from .ocpp_handlers import InboundCallDispatcher, random_meter_start
from .protocol import MessageProtocol
from .state_machine import ChargePoint, Connector, ConnectorStatus, ConnectorType, Transaction
from .transactions import TransactionStateMachine


class DeviceRegistry:
    def __init__(
        self,
        server_url: str = OCPP_SERVER_URL,
        heartbeat_interval: float = HEARTBEAT_INTERVAL_SEC,
        meter_interval: float = METER_INTERVAL_SEC,
        message_log_limit: int = MESSAGE_LOG_LIMIT,
    ):
        self.charge_points: Dict[str, ChargePoint] = {}
        self.connections: Dict[str, Connection] = {}
        self.meter_tasks: Dict[Tuple[str, int], asyncio.Task] = {}
        self.background_tasks: Set[asyncio.Task] = set()
        self.messages = MessageLog(message_log_limit)
        self.selected_device: Optional[str] = None
        self.selected_connector: Optional[int] = None
        self.meter_interval = meter_interval
        self._locks: Dict[str, asyncio.Lock] = {}

        self.protocol = MessageProtocol(self)
        self.dispatcher = InboundCallDispatcher(self)
        self.transactions = TransactionStateMachine(self)
        self.connection_manager = ConnectionManager(self, server_url, heartbeat_interval)

    def lock(self, device_id: str) -> asyncio.Lock:
        if device_id not in self._locks:
            self._locks[device_id] = asyncio.Lock()
        return self._locks[device_id]

    # -------- lookups --------

    def get_charge_point(self, device_id) -> ChargePoint:
        cp = self.charge_points.get(device_id)
        if cp is None:
            raise UnknownDeviceError(device_id)
        return cp

    def get_connector(self, device_id, connector_id) -> Connector:
        connector = self.get_charge_point(device_id).get(connector_id)
        if connector is None:
            raise UnknownConnectorError(device_id, connector_id)
        return connector

    def find_connector(self, device_id, connector_id) -> Optional[Connector]:
        cp = self.charge_points.get(device_id)
        return cp.get(connector_id) if cp else None

    def is_connected(self, device_id) -> bool:
        connection = self.connections.get(device_id)
        return connection is not None and connection.is_open

    def snapshot(self) -> dict:
        return {device_id: cp.to_dict() for device_id, cp in self.charge_points.items()}

    def connection_status(self) -> dict:
        return {
            device_id: {
                "isConnected": self.is_connected(device_id),
                "hasConnection": device_id in self.connections,
            }
            for device_id in self.charge_points
        }

    def transaction_info(self, device_id, connector_id) -> Optional[Transaction]:
        connector = self.find_connector(device_id, connector_id)
        return connector.transaction if connector else None

    def selected_transaction(self) -> Optional[Transaction]:
        return self.transaction_info(self.selected_device, self.selected_connector)

    def sessions(self, device_id=None) -> List[dict]:
        if device_id is not None:
            devices = {device_id: self.get_charge_point(device_id)}
        else:
            devices = self.charge_points
        sessions = []
        for target, cp in devices.items():
            for cid, connector in cp.connectors.items():
                tx = connector.transaction
                if tx is None:
                    continue
                sessions.append({
                    "deviceId": target,
                    "connectorId": cid,
                    "transactionId": tx.transaction_id,
                    "status": connector.status,
                    "startTime": tx.start_timestamp,
                    "idTag": tx.id_tag,
                    "meterStart": tx.meter_start,
                    "meterStop": tx.meter_stop,
                    "duration": tx.duration(),
                    "kwhConsumed": tx.kwh_consumed(),
                })
        return sessions

    # -------- charge point lifecycle --------

    async def create_charge_point(
        self,
        device_id: str,
        connector_count: int = 1,
        power: float = DEFAULT_POWER_KW,
        connector_type: str = DEFAULT_CONNECTOR_TYPE,
    ) -> ChargePoint:
        if not device_id:
            raise InvalidRequestError("Device ID is required")
        if connector_count < 1:
            raise InvalidRequestError("connectorCount must be at least 1")
        if power <= 0:
            raise InvalidRequestError("power must be positive")
        if connector_type not in ConnectorType.ALL:
            raise InvalidRequestError(f"Invalid connector type: {connector_type}")

        if device_id in self.charge_points:
            await self.delete_charge_point(device_id)
        cp = ChargePoint(device_id, connector_count, power, connector_type)
        self.charge_points[device_id] = cp
        self.selected_device, self.selected_connector = device_id, 1
        logging.info(
            f"Created charging point: {device_id} with {connector_count} connectors "
            f"({power} kW {connector_type})"
        )
        return cp

    async def delete_charge_point(self, device_id) -> None:
        self.get_charge_point(device_id)
        async with self.lock(device_id):
            for (target, cid) in list(self.meter_tasks):
                if target == device_id:
                    self.stop_meter(target, cid)
            await self.connection_manager.disconnect(device_id)
            del self.charge_points[device_id]
        self._locks.pop(device_id, None)
        self.messages.purge_device(device_id)
        if self.selected_device == device_id:
            self.selected_device = self.selected_connector = None
        logging.info(f"Deleted charging point {device_id}")

    def select(self, device_id, connector_id=None) -> Tuple[str, int]:
        cp = self.get_charge_point(device_id)
        connector_id = connector_id or 1
        if cp.get(connector_id) is None:
            raise UnknownConnectorError(device_id, connector_id)
        self.selected_device, self.selected_connector = device_id, connector_id
        logging.info(f"Selected charging point: {device_id}, connector: {connector_id}")
        return device_id, connector_id

    # -------- transport --------

    async def connect(self, device_id) -> Connection:
        self.get_charge_point(device_id)
        return await self.connection_manager.connect(device_id)

    async def disconnect(self, device_id) -> bool:
        return await self.connection_manager.disconnect(device_id)

    # -------- connector / transaction control --------

    async def set_status(self, status, device_id=None, connector_id=None) -> Tuple[str, int]:
        if not ConnectorStatus.is_valid(status):
            raise InvalidStatusError(status)
        if device_id is None or connector_id is None:
            if self.selected_device is None or self.selected_connector is None:
                raise InvalidRequestError("No charging point or connector selected")
            device_id, connector_id = self.selected_device, self.selected_connector
        connector = self.get_connector(device_id, connector_id)

        async with self.lock(device_id):
            connector.status = status
            await self.transactions.send_status_notification(device_id, connector_id, status)
            if status != ConnectorStatus.CHARGING:
                self.stop_meter(device_id, connector_id)
        logging.info(f"Status changed to {status} for {device_id}:{connector_id}")
        return device_id, connector_id

    async def start_charging(self, device_id, connector_id, id_tag=None, meter_start=None) -> Transaction:
        connector = self.get_connector(device_id, connector_id)
        if not self.is_connected(device_id):
            raise NotConnectedError(device_id)
        if connector.transaction is not None:
            raise InvalidRequestError(f"Connector {device_id}:{connector_id} already has a transaction")
        if meter_start is None:
            meter_start = random_meter_start()
        async with self.lock(device_id):
            tx = await self.transactions.start(device_id, connector_id, id_tag or DEFAULT_ID_TAG, meter_start)
        if tx is None:
            raise NotConnectedError(device_id)
        return tx

    async def stop_charging(self, device_id, connector_id) -> Tuple[int, int]:
        connector = self.get_connector(device_id, connector_id)
        async with self.lock(device_id):
            return await self.transactions.stop(device_id, connector)

    # -------- tasks --------

    def start_meter(self, device_id, connector_id) -> Optional[asyncio.Task]:
        self.stop_meter(device_id, connector_id)
        connector = self.find_connector(device_id, connector_id)
        if connector is None or connector.transaction is None:
            logging.warning(f"Cannot start MeterValues: no connector or transaction for {device_id}:{connector_id}")
            return None
        simulator = MeterSimulator(self, device_id, connector, self.meter_interval)
        key = (device_id, connector_id)
        task = asyncio.create_task(simulator.run(), name=f"meter-{device_id}-{connector_id}")
        self.meter_tasks[key] = task
        task.add_done_callback(lambda t: self._forget_meter(key, t))
        return task

    def stop_meter(self, device_id, connector_id) -> None:
        task = self.meter_tasks.pop((device_id, connector_id), None)
        if task is not None:
            task.cancel()

    def _forget_meter(self, key, task: asyncio.Task) -> None:
        if self.meter_tasks.get(key) is task:
            del self.meter_tasks[key]
        if not task.cancelled() and task.exception() is not None:
            logging.error(f"MeterValues task for {key[0]}:{key[1]} failed: {task.exception()!r}")

    def spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self.background_tasks.add(task)
        task.add_done_callback(self._background_done)
        return task

    def _background_done(self, task: asyncio.Task) -> None:
        self.background_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logging.error(f"Background task failed: {task.exception()!r}")

    async def close(self) -> None:
        for device_id in list(self.connections):
            await self.connection_manager.disconnect(device_id)
        for device_id, cid in list(self.meter_tasks):
            self.stop_meter(device_id, cid)
        for task in list(self.background_tasks):
            task.cancel()
        logging.info("Simulator registry closed")
