from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Optional


class ConnectorStatus:
    AVAILABLE = "Available"
    OCCUPIED = "Occupied"
    RESERVED = "Reserved"
    UNAVAILABLE = "Unavailable"
    FAULTED = "Faulted"
    FINISHING = "Finishing"
    PREPARING = "Preparing"
    CHARGING = "Charging"

    ALL = frozenset(
        [AVAILABLE, OCCUPIED, RESERVED, UNAVAILABLE, FAULTED, FINISHING, PREPARING, CHARGING]
    )

    @classmethod
    def is_valid(cls, status) -> bool:
        return status in cls.ALL


class ConnectorType:
    AC = "AC"
    DC = "DC"

    ALL = frozenset([AC, DC])


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def round_wh(value: float) -> int:
    """Round half up, the way meter readings go out on the wire."""
    return int(math.floor(value + 0.5))


@dataclass
class Transaction:
    """Metering record of one charging session on a connector."""

    meter_start: int
    start_timestamp: str
    id_tag: str
    transaction_id: Optional[int] = None
    last_meter_value: Optional[float] = None

    @property
    def meter_stop(self) -> int:
        if self.last_meter_value is None:
            return self.meter_start
        return round_wh(self.last_meter_value)

    def record_meter_value(self, value: float) -> None:
        # readings never go backwards within a session
        if self.last_meter_value is not None and value < self.last_meter_value:
            return
        self.last_meter_value = value

    def energy_wh(self) -> float:
        if self.last_meter_value is None:
            return 0.0
        return self.last_meter_value - self.meter_start

    def kwh_consumed(self) -> float:
        return round(self.energy_wh() / 1000, 3)

    def duration(self, now: Optional[datetime] = None) -> str:
        try:
            started = datetime.fromisoformat(self.start_timestamp.replace("Z", "+00:00"))
        except ValueError:
            return "0:00:00"
        now = now or datetime.now(timezone.utc)
        secs = max(0, int((now - started).total_seconds()))
        hours, rest = divmod(secs, 3600)
        minutes, seconds = divmod(rest, 60)
        return f"{hours}:{minutes:02d}:{seconds:02d}"

    def to_dict(self) -> dict:
        return {
            "transactionId": self.transaction_id,
            "meterStart": self.meter_start,
            "timestamp": self.start_timestamp,
            "idTag": self.id_tag,
            "lastMeterValue": self.last_meter_value,
        }


class Connector:
    def __init__(self, connector_id: int, power: float, connector_type: str):
        self.id = connector_id
        self.status = ConnectorStatus.AVAILABLE
        self.power = power
        self.type = connector_type
        self.transaction: Optional[Transaction] = None

    @property
    def is_dc(self) -> bool:
        return self.type == ConnectorType.DC

    def has_active_transaction(self) -> bool:
        return self.transaction is not None and self.transaction.transaction_id is not None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "status": self.status,
            "power": self.power,
            "type": self.type,
            "transaction": self.transaction.to_dict() if self.transaction else None,
        }


class ChargePoint:
    def __init__(self, device_id: str, connectors=1, power=22.0, connector_type=ConnectorType.AC):
        self.device_id = device_id
        self.connectors: Dict[int, Connector] = {
            i: Connector(i, power, connector_type) for i in range(1, connectors + 1)
        }

    def get(self, cid: int) -> Optional[Connector]:
        return self.connectors.get(cid)

    def get_by_tx(self, tx_id) -> Optional[Connector]:
        """First connector whose transaction carries tx_id (5 and "5" match)."""
        if tx_id is None:
            return None
        for c in self.connectors.values():
            if c.transaction and c.transaction.transaction_id is not None \
                    and str(c.transaction.transaction_id) == str(tx_id):
                return c
        return None

    def to_dict(self) -> dict:
        return {
            "deviceId": self.device_id,
            "connectors": {str(cid): c.to_dict() for cid, c in self.connectors.items()},
        }
