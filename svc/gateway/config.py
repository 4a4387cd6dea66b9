from __future__ import annotations
import os

# Gateway mode: "sim" for the built in simulated sensors or "ble" for the radio
MODE = os.getenv("GATEWAY_MODE", "sim").lower()

# Path for the sensor/readings database
# Get the svc directory (parent of gateway directory where this file lives)
_SVC_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
DATA_DIR = os.getenv("GATEWAY_DATA_DIR", "data")
DB_FILE = os.getenv("GATEWAY_DB_FILE", os.path.join(_SVC_DIR, DATA_DIR, "sensors.db"))

# Seconds sqlite waits on a locked database before reporting it busy
DB_TIMEOUT_S = float(os.getenv("GATEWAY_DB_TIMEOUT_S", "5"))

# Set to 0 to serve stored data without touching the radio
SCHEDULER_ENABLED = os.getenv("GATEWAY_SCHEDULER_ENABLED", "1") not in ("0", "false", "no")

# Scheduler timing
EVENT_TIMEOUT_S = float(os.getenv("GATEWAY_EVENT_TIMEOUT_S", "1"))
INSPECT_INTERVAL_S = float(os.getenv("GATEWAY_INSPECT_INTERVAL_S", "1"))
POLL_INTERVAL_S = float(os.getenv("GATEWAY_POLL_INTERVAL_S", "60"))

# Max wait for a sensor to answer a handshake or a read command
RESPONSE_TIMEOUT_S = float(os.getenv("GATEWAY_RESPONSE_TIMEOUT_S", "5"))

# Backoff between retries while storage reports busy
STORAGE_BACKOFF_S = float(os.getenv("GATEWAY_STORAGE_BACKOFF_S", "1"))

# Only peripherals advertising a name containing this are reported (empty = all)
NAME_FILTER = os.getenv("GATEWAY_NAME_FILTER", "Weather")

# BlueZ adapter, e.g. "hci0"; empty uses the system default
BLE_ADAPTER = os.getenv("GATEWAY_BLE_ADAPTER", "")

# Number of fake sensors announced in sim mode
SIM_SENSORS = int(os.getenv("GATEWAY_SIM_SENSORS", "3"))

HOST = os.getenv("GATEWAY_HOST", "0.0.0.0")
PORT = int(os.getenv("GATEWAY_PORT", "8000"))
