import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from .config import DEFAULT_CONNECTOR_TYPE, DEFAULT_POWER_KW
from .errors import (
    InvalidRequestError,
    NotConnectedError,
    SimulatorError,
    UnknownConnectorError,
    UnknownDeviceError,
)
from .registry import DeviceRegistry

router = APIRouter()


def get_registry(request: Request) -> DeviceRegistry:
    return request.app.state.registry


def error_status(exc: SimulatorError) -> int:
    if isinstance(exc, (UnknownDeviceError, UnknownConnectorError)):
        return 404
    if isinstance(exc, NotConnectedError):
        return 409
    return 400


class CreateChargePointReq(BaseModel):
    deviceId: str
    connectorCount: int = 1
    power: float = DEFAULT_POWER_KW
    type: str = DEFAULT_CONNECTOR_TYPE


class DeviceReq(BaseModel):
    deviceId: str


class SelectReq(BaseModel):
    deviceId: str
    connectorId: int | None = None


class StatusReq(BaseModel):
    status: str
    deviceId: str | None = None
    connectorId: int | None = None


class StartReq(BaseModel):
    deviceId: str
    connectorId: int = 1
    id_tag: str | None = Field(default=None, alias="idTag")

    model_config = ConfigDict(populate_by_name=True)


class StopReq(BaseModel):
    deviceId: str
    connectorId: int = 1


def _selection(registry: DeviceRegistry) -> dict:
    return {
        "selectedDevice": registry.selected_device,
        "selectedConnector": registry.selected_connector,
    }


@router.get("/health")
def health():
    return {"ok": True, "time": datetime.now(timezone.utc).isoformat()}


@router.get("/api/status")
async def api_status(registry: DeviceRegistry = Depends(get_registry)):
    tx = registry.selected_transaction()
    return {
        "chargingPoints": registry.snapshot(),
        "connectionStatus": registry.connection_status(),
        **_selection(registry),
        "transaction": tx.to_dict() if tx else None,
    }


@router.get("/api/charging-points")
async def api_list_charging_points(registry: DeviceRegistry = Depends(get_registry)):
    return {"chargingPoints": registry.snapshot(), **_selection(registry)}


@router.post("/api/charging-points")
async def api_create_charging_point(req: CreateChargePointReq, registry: DeviceRegistry = Depends(get_registry)):
    cp = await registry.create_charge_point(req.deviceId, req.connectorCount, req.power, req.type)
    return {
        "success": True,
        "message": f"Charging point {req.deviceId} created",
        "chargingPoint": cp.to_dict(),
    }


@router.delete("/api/charging-points/{device_id}")
async def api_delete_charging_point(device_id: str, registry: DeviceRegistry = Depends(get_registry)):
    await registry.delete_charge_point(device_id)
    return {"success": True, "message": f"Charging point {device_id} deleted"}


@router.post("/api/select-charging-point")
async def api_select(req: SelectReq, registry: DeviceRegistry = Depends(get_registry)):
    device_id, connector_id = registry.select(req.deviceId, req.connectorId)
    return {"success": True, "selectedDevice": device_id, "selectedConnector": connector_id}


@router.post("/api/connect")
async def api_connect(req: DeviceReq, registry: DeviceRegistry = Depends(get_registry)):
    registry.get_charge_point(req.deviceId)
    if registry.is_connected(req.deviceId):
        raise InvalidRequestError("Already connected")
    await registry.connect(req.deviceId)
    return {"success": True, "message": f"Connecting {req.deviceId} to OCPP server"}


@router.post("/api/disconnect")
async def api_disconnect(req: DeviceReq, registry: DeviceRegistry = Depends(get_registry)):
    registry.get_charge_point(req.deviceId)
    if not await registry.disconnect(req.deviceId):
        return {"success": True, "message": f"{req.deviceId} was not connected"}
    return {"success": True, "message": f"Disconnected {req.deviceId}"}


@router.post("/api/status-notification")
async def api_status_notification(req: StatusReq, registry: DeviceRegistry = Depends(get_registry)):
    device_id, connector_id = await registry.set_status(req.status, req.deviceId, req.connectorId)
    return {
        "success": True,
        "message": f"Status changed to {req.status}",
        "deviceId": device_id,
        "connectorId": connector_id,
    }


@router.post("/api/start-charging")
async def api_start_charging(req: StartReq, registry: DeviceRegistry = Depends(get_registry)):
    tx = await registry.start_charging(req.deviceId, req.connectorId, req.id_tag)
    return {"success": True, "message": "StartTransaction sent", "transaction": tx.to_dict()}


@router.post("/api/stop-charging")
async def api_stop_charging(req: StopReq, registry: DeviceRegistry = Depends(get_registry)):
    tx_id, meter_stop = await registry.stop_charging(req.deviceId, req.connectorId)
    return {
        "success": True,
        "message": "Charging stopped",
        "transactionId": tx_id,
        "meterStop": meter_stop,
    }


@router.get("/api/transaction-info")
async def api_transaction_info(deviceId: str, connectorId: int = 1, registry: DeviceRegistry = Depends(get_registry)):
    registry.get_connector(deviceId, connectorId)
    tx = registry.transaction_info(deviceId, connectorId)
    return {"deviceId": deviceId, "connectorId": connectorId, "transaction": tx.to_dict() if tx else None}


@router.get("/api/charging-sessions")
async def api_sessions(registry: DeviceRegistry = Depends(get_registry)):
    return {"sessions": registry.sessions()}


@router.get("/api/charging-sessions/{device_id}")
async def api_device_sessions(device_id: str, registry: DeviceRegistry = Depends(get_registry)):
    return {"sessions": registry.sessions(device_id)}


@router.get("/api/ocpp-messages")
async def api_messages(deviceId: str | None = None, registry: DeviceRegistry = Depends(get_registry)):
    return {"messages": [e.to_dict() for e in registry.messages.entries(deviceId)]}


@router.post("/api/clear-messages")
async def api_clear_messages(registry: DeviceRegistry = Depends(get_registry)):
    registry.messages.clear()
    return {"success": True, "message": "Messages cleared"}


def create_app(registry: DeviceRegistry) -> FastAPI:
    app = FastAPI(title="OCPP Charge Point Simulator", version="1.0.0")
    app.state.registry = registry

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        logging.info(f">>> {request.method} {request.url.path}")
        try:
            response = await call_next(request)
            logging.info(f"<<< {request.method} {request.url.path} -> {response.status_code}")
            return response
        except Exception:
            logging.exception("Handler crashed")
            raise

    @app.exception_handler(SimulatorError)
    async def simulator_error_handler(request: Request, exc: SimulatorError):
        logging.warning(f"{request.method} {request.url.path} rejected: {exc}")
        return JSONResponse(status_code=error_status(exc), content={"success": False, "message": str(exc)})

    app.include_router(router)
    return app
