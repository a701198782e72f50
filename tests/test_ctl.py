import json

import pytest

from cpsim import ctl


class FakeResponse:
    status_code = 200
    reason = "OK"
    text = '{"success": true}'


@pytest.fixture
def recorded(monkeypatch):
    calls = []

    def fake_request(method, url, data=None, headers=None, timeout=None):
        calls.append((method, url, json.loads(data) if data else None))
        return FakeResponse()

    monkeypatch.setattr(ctl.requests, "request", fake_request)
    return calls


def test_start_posts_camel_case_body(recorded):
    ctl.main(["--api", "http://sim:3001/", "start", "CP1", "2", "TAG9"])
    assert recorded == [
        ("POST", "http://sim:3001/api/start-charging", {"deviceId": "CP1", "connectorId": 2, "idTag": "TAG9"})
    ]


def test_start_defaults_id_tag(recorded):
    ctl.main(["--api", "http://sim:3001", "start", "CP1", "1"])
    assert recorded[0][2]["idTag"] == "SIMULATED"


def test_create_and_delete(recorded):
    ctl.main(["--api", "http://sim:3001", "create", "CP7", "--connectors", "2", "--power", "50", "--type", "DC"])
    ctl.main(["--api", "http://sim:3001", "delete", "CP7"])
    assert recorded[0] == (
        "POST",
        "http://sim:3001/api/charging-points",
        {"deviceId": "CP7", "connectorCount": 2, "power": 50.0, "type": "DC"},
    )
    assert recorded[1] == ("DELETE", "http://sim:3001/api/charging-points/CP7", None)


def test_messages_filter(recorded):
    ctl.main(["--api", "http://sim:3001", "messages", "CP1"])
    assert recorded == [("GET", "http://sim:3001/api/ocpp-messages?deviceId=CP1", None)]
