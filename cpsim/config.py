import json
import os
from dataclasses import dataclass, field, fields, replace
from typing import Optional

from ocpp.charge_point import camel_to_snake_case

HTTP_HOST = os.getenv("HTTP_HOST", "0.0.0.0")
HTTP_PORT = int(os.getenv("HTTP_PORT", "7071"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# key names reported by GetConfiguration
HEARTBEAT_INTERVAL_KEY = "HeartbeatInterval"
METER_SAMPLED_DATA_KEY = "MeterValuesSampledData"
METER_SAMPLE_INTERVAL_KEY = "MeterValueSampleInterval"
NUMBER_OF_CONNECTORS_KEY = "NumberOfConnectors"


@dataclass(frozen=True)
class EndpointIdentity:
    """What the station says about itself in BootNotification."""

    charge_point_id: str = "CP001"
    model: str = "CF-SIM-DC50"
    vendor: str = "ChargeForge"
    serial_number: str = "CF0001234567"
    firmware_version: str = "1.0.0"


@dataclass
class SimulatorConfig:
    server_url: str = "ws://localhost:5000/ocpp"
    identity: EndpointIdentity = field(default_factory=EndpointIdentity)
    ocpp_protocol: str = "ocpp1.6"

    heartbeat_interval: int = 30
    id_tag: str = "abc123"
    connectors: int = 1

    meter_start_wh: Optional[int] = None  # random seed when unset
    meter_rate_w: int = 7000
    meter_interval: float = 30.0
    status_interval: float = 60.0

    registration_grace: float = 1.0
    remote_start_delay: float = 1.0
    start_delay: float = 0.5
    stop_delay: float = 1.0
    authorize_timeout: float = 70.0
    call_timeout: float = 30.0
    shutdown_grace: float = 5.0

    # manual full transaction
    charge_delay: float = 5.0
    meter_samples: int = 3
    sample_gap: float = 2.0

    reconnect_base_delay: float = 1.0
    reconnect_max_delay: float = 30.0
    max_reconnect_attempts: int = 10

    tls_ca_cert: Optional[str] = None
    tls_client_cert: Optional[str] = None
    tls_client_key: Optional[str] = None

    @property
    def charge_point_id(self) -> str:
        return self.identity.charge_point_id

    @property
    def endpoint_url(self) -> str:
        return f"{self.server_url.rstrip('/')}/{self.identity.charge_point_id}"


_IDENTITY_FIELDS = {f.name for f in fields(EndpointIdentity)}
_CONFIG_FIELDS = {f.name for f in fields(SimulatorConfig)} - {"identity"}

# file/env spellings that differ from the field names
_ALIASES = {
    "charge_point_model": "model",
    "charge_point_vendor": "vendor",
    "charge_point_serial_number": "serial_number",
    "charge_point_serial": "serial_number",
    "test_rfid_card": "id_tag",
    "connector_count": "connectors",
}


def _int_env(name: str) -> Optional[int]:
    value = os.getenv(name)
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def load_from_env(prefix: str = "OCPP_") -> SimulatorConfig:
    """Build a config from ``<prefix>SERVER_URL``, ``<prefix>CHARGE_POINT_ID`` etc.

    Unset variables keep their defaults, and so do numeric variables that
    do not parse as integers.
    """
    ident = {}
    conf = {}
    for env_name, attr in (
        ("CHARGE_POINT_ID", "charge_point_id"),
        ("CHARGE_POINT_MODEL", "model"),
        ("CHARGE_POINT_VENDOR", "vendor"),
        ("CHARGE_POINT_SERIAL", "serial_number"),
        ("FIRMWARE_VERSION", "firmware_version"),
    ):
        value = os.getenv(f"{prefix}{env_name}")
        if value is not None:
            ident[attr] = value

    if os.getenv(f"{prefix}SERVER_URL") is not None:
        conf["server_url"] = os.environ[f"{prefix}SERVER_URL"]
    if os.getenv(f"{prefix}TEST_RFID_CARD") is not None:
        conf["id_tag"] = os.environ[f"{prefix}TEST_RFID_CARD"]

    for env_name, attr in (
        (f"{prefix}HEARTBEAT_INTERVAL", "heartbeat_interval"),
        (f"{prefix}CONNECTOR_COUNT", "connectors"),
        ("METER_START_WH", "meter_start_wh"),
        ("METER_RATE_W", "meter_rate_w"),
        ("METER_PERIOD_SEC", "meter_interval"),
    ):
        value = _int_env(env_name)
        if value is not None:
            conf[attr] = value

    for env_name, attr in (
        ("TLS_CA_CERT", "tls_ca_cert"),
        ("TLS_CLIENT_CERT", "tls_client_cert"),
        ("TLS_CLIENT_KEY", "tls_client_key"),
    ):
        if os.getenv(env_name):
            conf[attr] = os.environ[env_name]

    return SimulatorConfig(identity=EndpointIdentity(**ident), **conf)


def load_from_json(path: str) -> SimulatorConfig:
    """Read one station config from a JSON object (camelCase or snake_case keys)."""
    if not os.path.exists(path):
        raise FileNotFoundError(f"Configuration file not found: {path}")
    with open(path, encoding="utf-8") as fh:
        raw = json.load(fh)
    if not isinstance(raw, dict):
        raise ValueError(f"{path}: expected a JSON object")

    ident = {}
    conf = {}
    for key, value in camel_to_snake_case(raw).items():
        key = _ALIASES.get(key, key)
        if key in _IDENTITY_FIELDS:
            ident[key] = value
        elif key in _CONFIG_FIELDS:
            conf[key] = value
    return SimulatorConfig(identity=EndpointIdentity(**ident), **conf)


def load_from_args(
    server_url: Optional[str] = None,
    charge_point_id: Optional[str] = None,
    id_tag: Optional[str] = None,
) -> SimulatorConfig:
    config = SimulatorConfig()
    if server_url:
        config.server_url = server_url
    if charge_point_id:
        config.identity = replace(config.identity, charge_point_id=charge_point_id)
    if id_tag:
        config.id_tag = id_tag
    return config
