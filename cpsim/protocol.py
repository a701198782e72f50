"""OCPP-J framing and call/response correlation for the simulated charge points.

Outbound calls are fire-and-forget: nothing here waits for the server's
answer. The only response the simulator cares about is the one to
StartTransaction, which carries the transaction id, so each connection keeps
a single pending correlation for it. There is no timeout on that correlation;
a StartTransaction that is never answered stays pending.
"""
import json
import logging
import uuid
from dataclasses import dataclass
from typing import Optional, Union

from ocpp.exceptions import (
    FormatViolationError,
    OCPPError,
    PropertyConstraintViolationError,
    ProtocolError,
)
from ocpp.messages import Call, CallError, CallResult, MessageType
from ocpp.v16.enums import Action

Frame = Union[Call, CallResult, CallError]


@dataclass
class PendingStart:
    message_id: str
    device_id: str
    connector_id: int


def parse_frame(raw) -> list:
    """Decode raw websocket data into the OCPP-J array."""
    try:
        message = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise FormatViolationError(
            details={"cause": "Message is not valid JSON", "ocpp_message": raw}
        ) from e
    if not isinstance(message, list) or len(message) < 3:
        raise ProtocolError(
            details={"cause": "OCPP message hasn't the correct format", "ocpp_message": message}
        )
    return message


def unpack_frame(message: list) -> Frame:
    """Resolve the positional array into a Call, CallResult or CallError."""
    message_type, unique_id = message[0], message[1]
    if message_type == MessageType.Call:
        action = message[2]
        payload = message[3] if len(message) > 3 else {}
        # some servers put the action inside the payload object
        if isinstance(action, dict):
            action, payload = action.get("action", "Unknown"), action
        return Call(unique_id, action, payload or {})
    if message_type == MessageType.CallResult:
        return CallResult(unique_id, message[2])
    if message_type == MessageType.CallError:
        if isinstance(message[2], dict):
            error = message[2]
            return CallError(
                unique_id,
                error.get("errorCode"),
                error.get("errorDescription", ""),
                error.get("errorDetails", {}),
            )
        return CallError(
            unique_id,
            message[2],
            message[3] if len(message) > 3 else "",
            message[4] if len(message) > 4 else {},
        )
    raise PropertyConstraintViolationError(
        details={"cause": f"MessageTypeId '{message_type}' isn't valid"}
    )


def _action_name(action) -> str:
    return getattr(action, "value", action)


class MessageProtocol:
    def __init__(self, registry):
        self.registry = registry

    async def send(self, action, payload, device_id) -> Optional[str]:
        """Send a CALL; returns its message id, or None when not connected."""
        action = _action_name(action)
        connection = self.registry.connections.get(device_id) if device_id else None
        if connection is None or not connection.is_open:
            logging.info(f"Not connected to OCPP server for {device_id} - {action} not sent")
            return None

        message_id = str(uuid.uuid4())
        request = Call(message_id, action, payload or {})
        pending = None
        if action == Action.start_transaction:
            # recorded before sending so the answer can never arrive first
            pending = PendingStart(
                message_id=message_id,
                device_id=device_id,
                connector_id=request.payload.get("connectorId"),
            )
            connection.pending_start = pending
        if not await connection.transmit(request.to_json()):
            if pending is not None and connection.pending_start is pending:
                connection.pending_start = None
            return None
        logging.info(f"→ {action} for {device_id}: {request.payload}")
        self.registry.messages.add(
            "sent", [MessageType.Call, message_id, action, request.payload], device_id
        )
        return message_id

    async def reply(self, device_id, unique_id, payload, action=None) -> bool:
        connection = self.registry.connections.get(device_id)
        if connection is None or connection.websocket is None:
            logging.info(f"No connection found for {device_id} - cannot respond")
            return False
        response = CallResult(unique_id, payload)
        if not await connection.transmit(response.to_json()):
            return False
        self.registry.messages.add(
            "sent", [MessageType.CallResult, unique_id, payload], device_id, action
        )
        return True

    async def reply_error(self, device_id, unique_id, error_code, description, action=None) -> bool:
        connection = self.registry.connections.get(device_id)
        if connection is None or connection.websocket is None:
            logging.info(f"No connection found for {device_id} - cannot respond")
            return False
        message = [
            MessageType.CallError,
            unique_id,
            {"errorCode": error_code, "errorDescription": description},
        ]
        if not await connection.transmit(json.dumps(message, separators=(",", ":"))):
            return False
        logging.info(f"→ CALLERROR {error_code} to {device_id}: {description}")
        self.registry.messages.add("sent", message, device_id, action)
        return True

    async def receive(self, raw, device_id) -> None:
        try:
            message = parse_frame(raw)
        except OCPPError as e:
            logging.error(f"Error parsing OCPP message for {device_id}: {e}")
            return
        self.registry.messages.add("received", message, device_id)

        try:
            frame = unpack_frame(message)
        except OCPPError as e:
            logging.warning(f"Unknown message type from server for {device_id}: {e}")
            return

        if isinstance(frame, CallResult):
            await self._on_call_result(frame, device_id)
        elif isinstance(frame, CallError):
            logging.error(
                f"← CALLERROR for message {frame.unique_id} ({device_id}): "
                f"{frame.error_code} {frame.error_description}"
            )
        else:
            await self.registry.dispatcher.dispatch(frame, device_id)

    async def _on_call_result(self, frame: CallResult, device_id) -> None:
        logging.info(f"← CALLRESULT {frame.unique_id} for {device_id}: {frame.payload}")
        connection = self.registry.connections.get(device_id)
        pending = connection.pending_start if connection else None
        if pending is None or pending.message_id != frame.unique_id:
            return

        connection.pending_start = None
        payload = frame.payload if isinstance(frame.payload, dict) else {}
        async with self.registry.lock(pending.device_id):
            await self.registry.transactions.bind(
                pending.device_id, pending.connector_id, payload.get("transactionId")
            )
