import json

import pytest

from cpsim.config import load_from_args, load_from_env, load_from_json
from cpsim.control import build_config, parse_args


def test_defaults_from_args():
    config = load_from_args()
    assert config.server_url == "ws://localhost:5000/ocpp"
    assert config.charge_point_id == "CP001"
    assert config.id_tag == "abc123"
    assert config.heartbeat_interval == 30
    assert config.endpoint_url == "ws://localhost:5000/ocpp/CP001"


def test_legacy_positional_args():
    config = build_config(parse_args(["ws://csms:9000/ocpp/", "CP042", "TAG9"]))
    assert config.endpoint_url == "ws://csms:9000/ocpp/CP042"
    assert config.id_tag == "TAG9"


def test_env_loading(monkeypatch):
    monkeypatch.setenv("OCPP_SERVER_URL", "ws://example:8080/ocpp")
    monkeypatch.setenv("OCPP_CHARGE_POINT_ID", "CP777")
    monkeypatch.setenv("OCPP_CHARGE_POINT_VENDOR", "Acme")
    monkeypatch.setenv("OCPP_HEARTBEAT_INTERVAL", "45")
    monkeypatch.setenv("OCPP_CONNECTOR_COUNT", "not-a-number")
    monkeypatch.setenv("OCPP_TEST_RFID_CARD", "RFID1")
    monkeypatch.setenv("METER_START_WH", "2000")

    config = load_from_env()
    assert config.server_url == "ws://example:8080/ocpp"
    assert config.identity.charge_point_id == "CP777"
    assert config.identity.vendor == "Acme"
    assert config.identity.model == "CF-SIM-DC50"
    assert config.heartbeat_interval == 45
    assert config.connectors == 1
    assert config.id_tag == "RFID1"
    assert config.meter_start_wh == 2000


def test_env_prefix_from_cli(monkeypatch):
    monkeypatch.setenv("SIM_CHARGE_POINT_ID", "CP-PREFIXED")
    config = build_config(parse_args(["--env", "SIM_"]))
    assert config.charge_point_id == "CP-PREFIXED"


def test_json_loading(tmp_path):
    path = tmp_path / "cp.json"
    path.write_text(json.dumps({
        "serverUrl": "ws://json:5000/ocpp",
        "chargePointId": "CPJSON",
        "chargePointModel": "M1",
        "heartbeatInterval": 60,
        "testRfidCard": "JTAG",
        "ignored": True,
    }))

    config = load_from_json(str(path))
    assert config.server_url == "ws://json:5000/ocpp"
    assert config.identity.charge_point_id == "CPJSON"
    assert config.identity.model == "M1"
    assert config.heartbeat_interval == 60
    assert config.id_tag == "JTAG"


def test_json_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_from_json(str(tmp_path / "missing.json"))
