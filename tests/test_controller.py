import pytest
from pymodbus.exceptions import ModbusException

from conftest import FakeResponse
from powerpal.controller import (
    CloudController,
    LocalController,
    NullController,
    build_controller,
    parse_command,
    send_command,
)
from powerpal.errors import ControllerError, LoadError


class FakeResult:
    def __init__(self, error=False):
        self._error = error

    def isError(self):
        return self._error


class FakeModbusClient:
    def __init__(self, connect_ok=True, error=False, exc=None):
        self.connect_ok = connect_ok
        self.error = error
        self.exc = exc
        self.writes = []
        self.closed = False

    def connect(self):
        return self.connect_ok

    def write_register(self, address, value, slave=1):
        if self.exc:
            raise self.exc
        self.writes.append((address, value, slave))
        return FakeResult(self.error)

    def close(self):
        self.closed = True


SETTINGS = {
    "CONTROL_BACKEND": "none",
    "CONTROLLER_HOST": "10.0.0.5",
    "CONTROLLER_PORT": 502,
    "CONTROLLER_UNIT_ID": 3,
    "THINGSPEAK_CONTROL_WRITE_KEY": "CTRLKEY",
}


@pytest.mark.parametrize("raw, expected", [("on", "on"), (" OFF ", "off"), ("Auto", "auto")])
def test_parse_command(raw, expected):
    assert parse_command(raw) == expected


@pytest.mark.parametrize("raw", ["toggle", "", None])
def test_parse_command_rejects_unknown(raw):
    with pytest.raises(LoadError):
        parse_command(raw)


def test_local_controller_writes_mode_register():
    fake = FakeModbusClient()
    ctrl = LocalController("10.0.0.5", unit_id=3, client_factory=lambda: fake)

    ctrl.send(5, "auto")

    assert fake.writes == [(5, 2, 3)]
    assert fake.closed


def test_local_controller_connect_failure():
    fake = FakeModbusClient(connect_ok=False)
    ctrl = LocalController("10.0.0.5", client_factory=lambda: fake)

    with pytest.raises(ControllerError):
        ctrl.send(1, "on")
    assert fake.closed


def test_local_controller_write_error():
    fake = FakeModbusClient(error=True)
    ctrl = LocalController("10.0.0.5", client_factory=lambda: fake)

    with pytest.raises(ControllerError):
        ctrl.send(1, "off")
    assert fake.closed


def test_local_controller_modbus_exception():
    fake = FakeModbusClient(exc=ModbusException("timeout"))
    ctrl = LocalController("10.0.0.5", client_factory=lambda: fake)

    with pytest.raises(ControllerError):
        ctrl.send(1, "on")
    assert fake.closed


def test_cloud_controller_writes_control_channel(telemetry, session):
    session.queue(FakeResponse(text="17"))
    ctrl = CloudController(telemetry, "CTRLKEY")

    ctrl.send(6, "off")

    url, params = session.calls[0]
    assert url.endswith("/update")
    assert params == {"api_key": "CTRLKEY", "field6": "0"}


def test_cloud_controller_rejected(telemetry, session):
    session.queue(FakeResponse(text="0"))
    ctrl = CloudController(telemetry, "CTRLKEY")

    with pytest.raises(ControllerError):
        ctrl.send(6, "on")


def test_build_controller_backends(telemetry):
    assert isinstance(build_controller(SETTINGS), NullController)

    local = build_controller({**SETTINGS, "CONTROL_BACKEND": "local"})
    assert isinstance(local, LocalController)
    assert (local.host, local.port, local.unit_id) == ("10.0.0.5", 502, 3)

    cloud = build_controller({**SETTINGS, "CONTROL_BACKEND": "cloud"}, telemetry)
    assert isinstance(cloud, CloudController)


def test_build_controller_misconfigured(telemetry):
    with pytest.raises(ValueError):
        build_controller({**SETTINGS, "CONTROL_BACKEND": "cloud", "THINGSPEAK_CONTROL_WRITE_KEY": ""}, telemetry)
    with pytest.raises(ValueError):
        build_controller({**SETTINGS, "CONTROL_BACKEND": "zigbee"})


def test_send_command_stores_status(store, controller):
    load = store.add_load("u1", "Fridge", 3)

    updated = send_command(store, controller, "u1", load["_id"], "OFF")

    assert controller.sent == [(3, "off")]
    assert updated["status"] == "off"
    assert store.get_load("u1", load["_id"])["status"] == "off"


def test_send_command_failure_keeps_status(store, controller):
    load = store.add_load("u1", "Fridge", 3)
    controller.fail = True

    with pytest.raises(ControllerError):
        send_command(store, controller, "u1", load["_id"], "on")
    assert store.get_load("u1", load["_id"])["status"] == "auto"


def test_send_command_unknown_load(store, controller):
    with pytest.raises(LoadError) as exc:
        send_command(store, controller, "u1", "missing", "on")
    assert exc.value.status == 404
    assert controller.sent == []
