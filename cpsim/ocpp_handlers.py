import logging
import random
from dataclasses import asdict

from ocpp.charge_point import camel_to_snake_case, remove_nones, snake_to_camel_case
from ocpp.exceptions import InternalError, OCPPError
from ocpp.exceptions import NotImplementedError as OCPPNotImplementedError
from ocpp.messages import Call
from ocpp.routing import after, create_route_map, on
from ocpp.v16 import call_result
from ocpp.v16.enums import Action, RegistrationStatus, RemoteStartStopStatus

from .config import DEFAULT_ID_TAG, METER_START_MAX_WH, METER_START_MIN_WH
from .state_machine import utc_now

BOOT_INTERVAL_SEC = 30


def random_meter_start() -> int:
    return random.randrange(METER_START_MIN_WH, METER_START_MAX_WH)


class InboundCallDispatcher:
    """Answers the CALLs the server sends to a simulated charge point.

    Handlers are looked up by action with ``ocpp.routing``: ``@on`` handlers
    build the CALLRESULT, ``@after`` handlers run as background tasks once the
    reply has gone out. Every well-formed CALL gets exactly one reply.
    """

    def __init__(self, registry):
        self.registry = registry
        self.route_map = {
            getattr(action, "value", action): routes
            for action, routes in create_route_map(self).items()
        }

    async def dispatch(self, request: Call, device_id) -> None:
        logging.info(f"← {request.action} from server for {device_id}: {request.payload}")
        protocol = self.registry.protocol
        routes = self.route_map.get(request.action, {})
        handler = routes.get("_on_action")
        if handler is None:
            await protocol.reply_error(
                device_id,
                request.unique_id,
                OCPPNotImplementedError.code,
                f"Action {request.action} not implemented in simulator",
                request.action,
            )
            return

        payload = request.payload if isinstance(request.payload, dict) else {}
        snake_case_payload = camel_to_snake_case(payload)
        try:
            result = await handler(device_id, **snake_case_payload)
        except OCPPError as e:
            logging.warning(f"{request.action} from server for {device_id} rejected: {e}")
            await protocol.reply_error(
                device_id, request.unique_id, e.code, e.description, request.action
            )
            return
        except Exception as e:
            logging.exception(f"Error handling {request.action} for {device_id}")
            await protocol.reply_error(
                device_id, request.unique_id, InternalError.code, str(e), request.action
            )
            return

        response = remove_nones(snake_to_camel_case(asdict(result)))
        await protocol.reply(device_id, request.unique_id, response, request.action)

        after_handler = routes.get("_after_action")
        if after_handler is not None:
            self.registry.spawn(after_handler(device_id, **snake_case_payload))

    # ====== server -> charge point ======

    @on(Action.heartbeat)
    async def on_heartbeat(self, device_id, **kwargs):
        return call_result.Heartbeat(current_time=utc_now())

    @on(Action.boot_notification)
    async def on_boot_notification(self, device_id, **kwargs):
        return call_result.BootNotification(
            current_time=utc_now(),
            interval=BOOT_INTERVAL_SEC,
            status=RegistrationStatus.accepted,
        )

    @on(Action.remote_start_transaction)
    async def on_remote_start(self, device_id, id_tag=None, connector_id=None, **kwargs):
        # the accept is unconditional; the handshake may still be skipped
        return call_result.RemoteStartTransaction(status=RemoteStartStopStatus.accepted)

    @after(Action.remote_start_transaction)
    async def after_remote_start(self, device_id, id_tag=None, connector_id=None, **kwargs):
        cid = connector_id
        if cid is None and self.registry.selected_device == device_id:
            cid = self.registry.selected_connector
        cid = int(cid or 1)
        async with self.registry.lock(device_id):
            await self.registry.transactions.start(
                device_id, cid, id_tag or DEFAULT_ID_TAG, random_meter_start()
            )

    @on(Action.remote_stop_transaction)
    async def on_remote_stop(self, device_id, transaction_id=None, **kwargs):
        return call_result.RemoteStopTransaction(status=RemoteStartStopStatus.accepted)

    @after(Action.remote_stop_transaction)
    async def after_remote_stop(self, device_id, transaction_id=None, **kwargs):
        async with self.registry.lock(device_id):
            await self.registry.transactions.stop_by_transaction_id(transaction_id, device_id)
