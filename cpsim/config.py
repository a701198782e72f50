import os

# Charge points connect to f"{OCPP_SERVER_URL}/{device_id}"
OCPP_SERVER_URL = os.getenv("OCPP_SERVER_URL", "ws://127.0.0.1:9000/ocpp")
OCPP_SUBPROTOCOL = "ocpp1.6"

HTTP_HOST = os.getenv("HTTP_HOST", "0.0.0.0")
HTTP_PORT = int(os.getenv("HTTP_PORT", "3001"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

HEARTBEAT_INTERVAL_SEC = float(os.getenv("HEARTBEAT_INTERVAL_SEC", "30"))
METER_INTERVAL_SEC = float(os.getenv("METER_INTERVAL_SEC", "30"))
MESSAGE_LOG_LIMIT = int(os.getenv("MESSAGE_LOG_LIMIT", "100"))

# BootNotification identity
CHARGE_POINT_VENDOR = os.getenv("CHARGE_POINT_VENDOR", "OCPP Simulator")
CHARGE_POINT_MODEL = os.getenv("CHARGE_POINT_MODEL", "Simulator v1.0")
FIRMWARE_VERSION = os.getenv("FIRMWARE_VERSION", "1.0.0")
METER_TYPE = os.getenv("METER_TYPE", "Simulated Meter")

# defaults for new charge points
DEFAULT_POWER_KW = float(os.getenv("DEFAULT_POWER_KW", "22"))
DEFAULT_CONNECTOR_TYPE = os.getenv("DEFAULT_CONNECTOR_TYPE", "AC")
DEFAULT_ID_TAG = "SIMULATED"

# random meterStart for remote starts, Wh
METER_START_MIN_WH = 1000
METER_START_MAX_WH = 5000

# used by cpsim-ctl
SIM_API_BASE = os.getenv("SIM_API_BASE", "http://127.0.0.1:3001")
