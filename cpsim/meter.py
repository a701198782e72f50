"""Synthetic MeterValues for a charging connector.

One MeterSimulator runs per (device, connector) while the connector is
Charging. It checks the connector state on every tick and exits by itself
once the session is gone; stopping a session does not have to reach it.
"""
import asyncio
import logging
from typing import List

from ocpp.v16.enums import Action, Location, Measurand, ReadingContext, UnitOfMeasure

from .state_machine import Connector, ConnectorStatus, Transaction, round_wh, utc_now

BATTERY_CAPACITY_KWH = 50
SOC_START_PERCENT = 20
SOC_MAX_PERCENT = 95
VOLTAGE_AC = 230
VOLTAGE_DC = 400


def energy_increment_wh(power_kw: float, interval_sec: float) -> float:
    return power_kw * interval_sec / 3600 * 1000


def state_of_charge(energy_wh: float) -> int:
    soc = SOC_START_PERCENT + (energy_wh / 1000) / BATTERY_CAPACITY_KWH * 100
    return int(min(SOC_MAX_PERCENT, max(SOC_START_PERCENT, soc)))


class MeterSimulator:
    def __init__(self, registry, device_id: str, connector: Connector, interval: float):
        self.registry = registry
        self.device_id = device_id
        self.connector_id = connector.id
        self.interval = interval
        self.power = connector.power
        self.is_dc = connector.is_dc
        self.meter_start = connector.transaction.meter_start
        self.meter_wh = float(self.meter_start)
        self.increment_wh = energy_increment_wh(self.power, interval)

    async def run(self) -> None:
        logging.info(
            f"Starting MeterValues for {self.device_id}:{self.connector_id} "
            f"(power={self.power} kW, +{self.increment_wh:.2f} Wh every {self.interval}s)"
        )
        while True:
            await asyncio.sleep(self.interval)
            async with self.registry.lock(self.device_id):
                if not await self.tick():
                    return

    def _is_charging(self, connector) -> bool:
        return (
            connector is not None
            and connector.status == ConnectorStatus.CHARGING
            and connector.has_active_transaction()
        )

    async def tick(self) -> bool:
        """Advance the meter and send one MeterValues; False once the session is over."""
        connector = self.registry.find_connector(self.device_id, self.connector_id)
        if not self._is_charging(connector):
            logging.info(f"Stopping MeterValues for {self.device_id}:{self.connector_id}")
            return False

        tx = connector.transaction
        self.meter_wh += self.increment_wh
        tx.record_meter_value(self.meter_wh)
        payload = {
            "connectorId": self.connector_id,
            "transactionId": tx.transaction_id,
            "meterValue": [
                {
                    "timestamp": utc_now(),
                    "sampledValue": self.sampled_values(tx),
                }
            ],
        }
        await self.registry.protocol.send(Action.meter_values, payload, self.device_id)
        return True

    def sampled_values(self, tx: Transaction) -> List[dict]:
        values = []
        if self.is_dc:
            values.append({
                "value": str(state_of_charge(self.meter_wh - tx.meter_start)),
                "measurand": Measurand.soc,
                "unit": UnitOfMeasure.percent,
                "context": ReadingContext.sample_periodic,
                "location": Location.ev,
            })
        values.append({
            "value": str(round_wh(self.meter_wh)),
            "measurand": Measurand.energy_active_import_register,
            "unit": UnitOfMeasure.wh,
        })
        voltage = VOLTAGE_DC if self.is_dc else VOLTAGE_AC
        values.append({
            "value": str(voltage),
            "measurand": Measurand.voltage,
            "unit": UnitOfMeasure.v,
        })
        values.append({
            "value": str(round_wh(self.power * 1000 / voltage)),
            "measurand": Measurand.current_import,
            "unit": UnitOfMeasure.a,
        })
        return values
