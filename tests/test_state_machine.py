from datetime import datetime, timedelta, timezone

from cpsim.state_machine import (
    ChargePoint,
    ConnectorStatus,
    ConnectorType,
    Transaction,
    round_wh,
)


def make_tx(meter_start=1000):
    return Transaction(meter_start=meter_start, start_timestamp="2024-05-01T10:00:00+00:00", id_tag="TAG1")


def test_new_charge_point_has_available_connectors():
    cp = ChargePoint("CP1", connectors=3, power=50, connector_type=ConnectorType.DC)
    assert sorted(cp.connectors) == [1, 2, 3]
    for c in cp.connectors.values():
        assert c.status == ConnectorStatus.AVAILABLE
        assert c.power == 50
        assert c.is_dc
        assert c.transaction is None


def test_unknown_connector_lookup_returns_none():
    cp = ChargePoint("CP1")
    assert cp.get(2) is None


def test_status_validation():
    assert ConnectorStatus.is_valid("Charging")
    assert ConnectorStatus.is_valid("Faulted")
    assert not ConnectorStatus.is_valid("charging")
    assert not ConnectorStatus.is_valid("SuspendedEV")


def test_round_wh_is_half_up():
    assert round_wh(1366.67) == 1367
    assert round_wh(1366.5) == 1367
    assert round_wh(1366.49) == 1366
    assert round_wh(2.5) == 3


def test_meter_stop_defaults_to_meter_start():
    tx = make_tx()
    assert tx.meter_stop == 1000
    assert tx.kwh_consumed() == 0.0


def test_meter_values_never_go_backwards():
    tx = make_tx()
    tx.record_meter_value(1183.33)
    tx.record_meter_value(1100)
    assert tx.last_meter_value == 1183.33
    tx.record_meter_value(1366.67)
    assert tx.meter_stop == 1367
    assert tx.kwh_consumed() == 0.367


def test_duration_format():
    tx = make_tx()
    now = datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc) + timedelta(hours=1, minutes=2, seconds=3)
    assert tx.duration(now) == "1:02:03"


def test_duration_before_start_is_zero():
    tx = make_tx()
    now = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)
    assert tx.duration(now) == "0:00:00"


def test_get_by_tx_matches_numeric_and_string_ids():
    cp = ChargePoint("CP1", connectors=2)
    tx = make_tx()
    tx.transaction_id = 5
    cp.get(2).transaction = tx

    assert cp.get_by_tx(5) is cp.get(2)
    assert cp.get_by_tx("5") is cp.get(2)
    assert cp.get_by_tx(6) is None
    assert cp.get_by_tx(None) is None


def test_unbound_transaction_is_not_active():
    cp = ChargePoint("CP1")
    c = cp.get(1)
    c.transaction = make_tx()
    assert not c.has_active_transaction()
    assert cp.get_by_tx(None) is None
    c.transaction.transaction_id = 1
    assert c.has_active_transaction()


def test_to_dict_shape():
    cp = ChargePoint("CP1", connectors=1, power=22, connector_type="AC")
    tx = make_tx()
    tx.transaction_id = 9
    cp.get(1).transaction = tx

    d = cp.to_dict()
    assert d["deviceId"] == "CP1"
    conn = d["connectors"]["1"]
    assert conn["status"] == "Available"
    assert conn["type"] == "AC"
    assert conn["transaction"] == {
        "transactionId": 9,
        "meterStart": 1000,
        "timestamp": "2024-05-01T10:00:00+00:00",
        "idTag": "TAG1",
        "lastMeterValue": None,
    }
