"""Switching commands for loads.

Commands are `on`, `off` and `auto`; `auto` hands switching back to the
field device, which sheds loads against the permissible limit.

Backends
--------
- local: Modbus TCP relay controller. The mode code of a load is written to
  the holding register whose address equals the load's telemetry field.
- cloud: ThingSpeak control channel. The mode code is written to the same
  field number on the control channel, which the field device polls.
- none: only the stored status changes.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional

from pymodbus.client import ModbusTcpClient
from pymodbus.exceptions import ModbusException

from powerpal.errors import ControllerError, LoadError, TelemetryError

logger = logging.getLogger(__name__)

# Silence noisy pymodbus logs; we explicitly log important failures ourselves.
logging.getLogger("pymodbus").setLevel(logging.CRITICAL)

COMMAND_CODES = {
    "off": 0,
    "on": 1,
    "auto": 2,
}


def parse_command(value: Any) -> str:
    command = str(value or "").strip().lower()
    if command not in COMMAND_CODES:
        raise LoadError(f"Unknown command '{value}'. Use one of: on, off, auto")
    return command


class NullController:
    """Keeps commands in the database only."""

    name = "none"

    def send(self, field_no: int, command: str) -> None:
        logger.info(f"No controller configured; field {field_no} set to '{command}' in database only")

    def close(self) -> None:
        pass


class LocalController:
    """Modbus TCP relay controller on the local network."""

    name = "local"

    def __init__(self, host: str, port: int = 502, unit_id: int = 1, timeout_seconds: float = 2,
                 client_factory: Optional[Callable[[], Any]] = None) -> None:
        self.host = host
        self.port = port
        self.unit_id = unit_id
        self._client_factory = client_factory or (
            lambda: ModbusTcpClient(host, port=port, timeout=timeout_seconds, retries=1)
        )

    def _connect(self):
        client = self._client_factory()
        if not client.connect():
            client.close()
            raise ControllerError(f"Cannot connect to controller at {self.host}:{self.port}")
        return client

    def send(self, field_no: int, command: str) -> None:
        code = COMMAND_CODES[command]
        client = self._connect()
        try:
            res = client.write_register(int(field_no), code, slave=self.unit_id)
            if res.isError():
                raise ControllerError(f"Controller rejected write to register {field_no}")
        except ModbusException as e:
            raise ControllerError(f"Modbus error while switching field {field_no}: {e}") from e
        finally:
            client.close()

        logger.info(f"Controller {self.host}:{self.port} field {field_no} -> {command} ({code})")

    def close(self) -> None:
        pass


class CloudController:
    """Writes commands to a ThingSpeak control channel."""

    name = "cloud"

    def __init__(self, telemetry_client, write_key: str) -> None:
        self._client = telemetry_client
        self._write_key = write_key

    def send(self, field_no: int, command: str) -> None:
        code = COMMAND_CODES[command]
        try:
            entry_id = self._client.write_fields({int(field_no): code}, write_key=self._write_key)
        except TelemetryError as e:
            raise ControllerError(str(e)) from e

        logger.info(f"Control channel field {field_no} -> {command} ({code}), entry {entry_id}")

    def close(self) -> None:
        pass


def build_controller(settings: dict[str, Any], telemetry_client=None):
    backend = str(settings.get("CONTROL_BACKEND") or "none").strip().lower()

    if backend == "none":
        return NullController()
    if backend == "local":
        return LocalController(
            settings["CONTROLLER_HOST"],
            port=int(settings["CONTROLLER_PORT"]),
            unit_id=int(settings["CONTROLLER_UNIT_ID"]),
        )
    if backend == "cloud":
        write_key = settings.get("THINGSPEAK_CONTROL_WRITE_KEY")
        if not write_key:
            raise ValueError("CONTROL_BACKEND=cloud needs THINGSPEAK_CONTROL_WRITE_KEY")
        if telemetry_client is None:
            raise ValueError("CONTROL_BACKEND=cloud needs a telemetry client")
        return CloudController(telemetry_client, write_key)

    raise ValueError(f"Unknown CONTROL_BACKEND '{backend}' (use local, cloud or none)")


def send_command(store, controller, uid: str, load_id: str, command: Any) -> dict[str, Any]:
    """Deliver a command for one load, then store the new status.

    If delivery fails the stored status is left as it was.
    """

    command = parse_command(command)
    load = store.get_load(uid, load_id)
    if not load:
        raise LoadError("Load not found", status=404)

    controller.send(load["field"], command)
    updated = store.set_status(uid, load_id, command)
    logger.info(f"Load '{load.get('name')}' ({load_id}) set to {command}")
    return updated
