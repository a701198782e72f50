import argparse
import json
from typing import Optional

import requests

from .config import DEFAULT_ID_TAG, SIM_API_BASE


def _do_json(method: str, url: str, body: Optional[str] = None) -> requests.Response:
    headers = {
        "Content-Type": "application/json",
        "Connection": "close",
    }
    resp = requests.request(method, url, data=body, headers=headers, timeout=15)
    print(f"{method} {url} -> {resp.status_code} {resp.reason}")
    print(resp.text)
    return resp


def create(api: str, device_id: str, connectors: int, power: float, connector_type: str) -> None:
    payload = {
        "deviceId": device_id,
        "connectorCount": connectors,
        "power": power,
        "type": connector_type,
    }
    _do_json("POST", f"{api}/api/charging-points", json.dumps(payload))


def delete(api: str, device_id: str) -> None:
    _do_json("DELETE", f"{api}/api/charging-points/{device_id}")


def connect(api: str, device_id: str) -> None:
    _do_json("POST", f"{api}/api/connect", json.dumps({"deviceId": device_id}))


def disconnect(api: str, device_id: str) -> None:
    _do_json("POST", f"{api}/api/disconnect", json.dumps({"deviceId": device_id}))


def set_status(api: str, device_id: str, connector_id: int, status: str) -> None:
    payload = {"deviceId": device_id, "connectorId": connector_id, "status": status}
    _do_json("POST", f"{api}/api/status-notification", json.dumps(payload))


def start_charge(api: str, device_id: str, connector_id: int, id_tag: Optional[str]) -> None:
    payload = {
        "deviceId": device_id,
        "connectorId": connector_id,
    }
    if id_tag is not None:
        payload["idTag"] = id_tag
    _do_json("POST", f"{api}/api/start-charging", json.dumps(payload))


def stop_charge(api: str, device_id: str, connector_id: int) -> None:
    payload = {
        "deviceId": device_id,
        "connectorId": connector_id,
    }
    _do_json("POST", f"{api}/api/stop-charging", json.dumps(payload))


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Drive the charge point simulator via its HTTP API")
    parser.add_argument("--api", default=SIM_API_BASE, help="simulator base URL")
    sub = parser.add_subparsers(dest="cmd", required=True)

    p_create = sub.add_parser("create", help="create a charging point")
    p_create.add_argument("deviceId")
    p_create.add_argument("--connectors", type=int, default=1)
    p_create.add_argument("--power", type=float, default=22.0)
    p_create.add_argument("--type", dest="connector_type", choices=["AC", "DC"], default="AC")

    p_delete = sub.add_parser("delete", help="delete a charging point")
    p_delete.add_argument("deviceId")

    p_connect = sub.add_parser("connect", help="connect to the OCPP server")
    p_connect.add_argument("deviceId")

    p_disconnect = sub.add_parser("disconnect", help="disconnect from the OCPP server")
    p_disconnect.add_argument("deviceId")

    p_status = sub.add_parser("status", help="send a StatusNotification")
    p_status.add_argument("deviceId")
    p_status.add_argument("connectorId", type=int)
    p_status.add_argument("status")

    p_start = sub.add_parser("start", help="start charging")
    p_start.add_argument("deviceId")
    p_start.add_argument("connectorId", type=int)
    p_start.add_argument("idTag", nargs="?", default=DEFAULT_ID_TAG)

    p_stop = sub.add_parser("stop", help="stop charging")
    p_stop.add_argument("deviceId")
    p_stop.add_argument("connectorId", type=int)

    sub.add_parser("list", help="show charging points and connection status")

    p_messages = sub.add_parser("messages", help="show the OCPP message log")
    p_messages.add_argument("deviceId", nargs="?")

    return parser.parse_args(argv)


def main(argv=None) -> None:
    args = parse_args(argv)
    api = args.api.rstrip("/")
    if args.cmd == "create":
        create(api, args.deviceId, args.connectors, args.power, args.connector_type)
    elif args.cmd == "delete":
        delete(api, args.deviceId)
    elif args.cmd == "connect":
        connect(api, args.deviceId)
    elif args.cmd == "disconnect":
        disconnect(api, args.deviceId)
    elif args.cmd == "status":
        set_status(api, args.deviceId, args.connectorId, args.status)
    elif args.cmd == "start":
        start_charge(api, args.deviceId, args.connectorId, args.idTag)
    elif args.cmd == "stop":
        stop_charge(api, args.deviceId, args.connectorId)
    elif args.cmd == "list":
        _do_json("GET", f"{api}/api/status")
    elif args.cmd == "messages":
        query = f"?deviceId={args.deviceId}" if args.deviceId else ""
        _do_json("GET", f"{api}/api/ocpp-messages{query}")


if __name__ == "__main__":
    main()
