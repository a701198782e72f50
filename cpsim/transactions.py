import logging
from typing import Optional, Tuple

from ocpp.v16.enums import Action, ChargePointErrorCode, Reason

from .errors import NoActiveTransactionError
from .state_machine import Connector, ConnectorStatus, Transaction, utc_now


class TransactionStateMachine:
    """Start, bind and stop of charging sessions.

    Every coroutine here mutates connector state, so callers must hold the
    device lock (``registry.lock(device_id)``).
    """

    def __init__(self, registry):
        self.registry = registry

    async def send_status_notification(self, device_id, connector_id, status, error_code=None):
        payload = {
            "connectorId": connector_id,
            "errorCode": error_code or ChargePointErrorCode.no_error,
            "status": status,
            "timestamp": utc_now(),
            "info": f"Simulated status: {status}",
        }
        if not self.registry.is_connected(device_id):
            logging.info(f"Not connected to OCPP server for {device_id}, status change is local only")
            return None
        return await self.registry.protocol.send(Action.status_notification, payload, device_id)

    async def start(self, device_id, connector_id, id_tag, meter_start) -> Optional[Transaction]:
        """Open a session and send StartTransaction.

        The connector only becomes Charging once the server answers (see bind).
        """
        if not self.registry.is_connected(device_id):
            logging.warning(f"Not connected to OCPP server for {device_id} - StartTransaction skipped")
            return None
        connector = self.registry.find_connector(device_id, connector_id)
        if connector is None:
            logging.warning(f"Cannot start transaction: connector {device_id}:{connector_id} not found")
            return None
        if connector.transaction is not None:
            logging.warning(
                f"Connector {device_id}:{connector_id} already has a transaction - StartTransaction skipped"
            )
            return None

        tx = Transaction(meter_start=meter_start, start_timestamp=utc_now(), id_tag=id_tag)
        connector.transaction = tx
        payload = {
            "connectorId": connector_id,
            "idTag": id_tag,
            "timestamp": tx.start_timestamp,
            "meterStart": meter_start,
        }
        await self.registry.protocol.send(Action.start_transaction, payload, device_id)
        return tx

    async def bind(self, device_id, connector_id, transaction_id) -> bool:
        """Attach the server's transaction id and move the connector to Charging."""
        connector = self.registry.find_connector(device_id, connector_id)
        if connector is None or connector.transaction is None:
            logging.warning(f"StartTransaction answered for {device_id}:{connector_id} without a pending session")
            return False
        tx = connector.transaction
        if transaction_id is None:
            logging.warning(f"StartTransaction answer for {device_id}:{connector_id} carries no transactionId")
            return False
        if tx.transaction_id is not None:
            logging.warning(
                f"Transaction {tx.transaction_id} already bound on {device_id}:{connector_id}, "
                f"ignoring {transaction_id}"
            )
            return False

        tx.transaction_id = transaction_id
        logging.info(f"Transaction started: {transaction_id} for {device_id}:{connector_id}")
        connector.status = ConnectorStatus.CHARGING
        await self.send_status_notification(device_id, connector_id, ConnectorStatus.CHARGING)
        self.registry.start_meter(device_id, connector_id)
        return True

    async def stop(self, device_id, connector: Connector) -> Tuple[int, int]:
        if not connector.has_active_transaction():
            raise NoActiveTransactionError(device_id, connector.id)
        tx = connector.transaction
        payload = {
            "transactionId": tx.transaction_id,
            "meterStop": tx.meter_stop,
            "timestamp": utc_now(),
            "idTag": tx.id_tag,
            "stopReason": Reason.power_loss,
        }
        await self.registry.protocol.send(Action.stop_transaction, payload, device_id)
        self.registry.stop_meter(device_id, connector.id)
        connector.status = ConnectorStatus.AVAILABLE
        await self.send_status_notification(device_id, connector.id, ConnectorStatus.AVAILABLE)
        connector.transaction = None
        logging.info(
            f"Transaction {payload['transactionId']} stopped on {device_id}:{connector.id}, "
            f"meterStop={payload['meterStop']}"
        )
        return payload["transactionId"], payload["meterStop"]

    def find_transaction(self, transaction_id, device_id=None) -> Optional[Tuple[str, Connector]]:
        devices = [device_id] if device_id is not None else list(self.registry.charge_points)
        for target in devices:
            cp = self.registry.charge_points.get(target)
            connector = cp.get_by_tx(transaction_id) if cp else None
            if connector is not None:
                return target, connector
        return None

    async def stop_by_transaction_id(self, transaction_id, device_id=None) -> Optional[Tuple[int, int]]:
        found = self.find_transaction(transaction_id, device_id)
        if found is None:
            logging.info(f"No active transaction found for transactionId {transaction_id}")
            return None
        target, connector = found
        return await self.stop(target, connector)
