class SimulatorError(Exception):
    """Base class for rejected control-plane requests."""


class UnknownDeviceError(SimulatorError):
    def __init__(self, device_id):
        super().__init__(f"Charging point '{device_id}' not found")
        self.device_id = device_id


class UnknownConnectorError(SimulatorError):
    def __init__(self, device_id, connector_id):
        super().__init__(f"Connector {connector_id} not found on '{device_id}'")
        self.device_id = device_id
        self.connector_id = connector_id


class InvalidStatusError(SimulatorError):
    def __init__(self, status):
        super().__init__(f"Invalid status: {status}")
        self.status = status


class InvalidRequestError(SimulatorError):
    pass


class NoActiveTransactionError(SimulatorError):
    def __init__(self, device_id, connector_id):
        super().__init__(
            f"No active transaction found for {device_id}:{connector_id}"
        )
        self.device_id = device_id
        self.connector_id = connector_id


class NotConnectedError(SimulatorError):
    def __init__(self, device_id):
        super().__init__(f"Not connected to OCPP server for {device_id}")
        self.device_id = device_id
