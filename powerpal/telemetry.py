"""ThingSpeak telemetry: feed client, field layout and the background poller.

Channel field layout
--------------------
    field1  current, slot 1 (A)
    field2  mains voltage (V)
    field3  power, slot 1 (W)
    field4  permissible limit (W), written back by the dashboard
    field5  current, slot 2 (A)
    field6  power, slot 2 (W)
    field7  current, slot 3 (A)
    field8  power, slot 3 (W)

A load is mapped to one of these fields (never field4).
"""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

import requests
from pymongo.errors import PyMongoError

from powerpal.errors import TelemetryError

logger = logging.getLogger(__name__)

VOLTAGE_FIELD = 2
LIMIT_FIELD = 4
FIELD_COUNT = 8

# slot -> (current field, power field)
SLOTS = {
    1: (1, 3),
    2: (5, 6),
    3: (7, 8),
}
SLOT_BY_FIELD = {f: slot for slot, pair in SLOTS.items() for f in pair}

LOAD_FIELDS = tuple(n for n in range(1, FIELD_COUNT + 1) if n != LIMIT_FIELD)


def to_number(value: Any) -> float:
    """Feed values arrive as strings or null; anything unusable reads as 0."""

    if value is None or value == "":
        return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(number):
        return 0.0
    return number


def validate_limit(value: Any) -> float:
    """Parse a permissible limit from user input. Raises ValueError."""

    if isinstance(value, bool):
        raise ValueError("Permissible limit must be a number")
    try:
        limit = float(value)
    except (TypeError, ValueError):
        raise ValueError("Permissible limit must be a number")
    if not math.isfinite(limit) or limit < 0:
        raise ValueError("Permissible limit must be zero or a positive number")
    return limit


def _format_value(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return repr(float(value))


@dataclass
class Snapshot:
    """One parsed feed entry."""

    fields: dict[int, float]
    entry_id: Optional[int] = None
    created_at: Optional[str] = None
    fetched_at: float = field(default_factory=time.time)
    default_limit: float = 1000.0

    def value(self, field_no: int) -> float:
        return self.fields.get(field_no, 0.0)

    @property
    def voltage(self) -> float:
        return self.value(VOLTAGE_FIELD)

    def slot(self, slot_no: int) -> tuple[float, float]:
        current_field, power_field = SLOTS[slot_no]
        return self.value(current_field), self.value(power_field)

    @property
    def total_power(self) -> float:
        return sum(self.slot(n)[1] for n in SLOTS)

    @property
    def total_current(self) -> float:
        return sum(self.slot(n)[0] for n in SLOTS)

    @property
    def permissible_limit(self) -> float:
        return self.value(LIMIT_FIELD) or self.default_limit

    @property
    def over_limit(self) -> bool:
        return self.total_power > self.permissible_limit

    def to_dict(self) -> dict[str, Any]:
        return {
            "entry_id": self.entry_id,
            "created_at": self.created_at,
            "fetched_at": datetime.fromtimestamp(self.fetched_at).isoformat(),
            "fields": {str(n): v for n, v in sorted(self.fields.items())},
            "voltage": round(self.voltage, 1),
            "slots": [
                {"slot": n, "current": round(self.slot(n)[0], 2), "power": round(self.slot(n)[1], 2)}
                for n in sorted(SLOTS)
            ],
            "total_power": round(self.total_power, 2),
            "total_current": round(self.total_current, 2),
            "permissible_limit": self.permissible_limit,
            "over_limit": self.over_limit,
        }


def parse_feed(payload: Any, default_limit: float = 1000.0) -> Snapshot:
    """Build a Snapshot from a ``feeds.json`` response body."""

    if not isinstance(payload, dict):
        raise TelemetryError("Unexpected telemetry payload")
    feeds = payload.get("feeds") or []
    if not feeds:
        raise TelemetryError("Telemetry feed has no entries yet")

    feed = feeds[-1]
    if not isinstance(feed, dict):
        raise TelemetryError("Unexpected telemetry feed entry")
    fields = {n: to_number(feed.get(f"field{n}")) for n in range(1, FIELD_COUNT + 1)}

    entry_id = feed.get("entry_id")
    try:
        entry_id = int(entry_id) if entry_id is not None else None
    except (TypeError, ValueError):
        entry_id = None

    return Snapshot(
        fields=fields,
        entry_id=entry_id,
        created_at=feed.get("created_at"),
        default_limit=default_limit,
    )


def reading_for_field(snapshot: Snapshot, field_no: int, tariff_per_kwh: float) -> dict[str, Any]:
    """Live reading for a single mapped field.

    Fields that belong to a sensor slot carry the slot's current and power;
    the voltage field only has its raw value.
    """

    slot_no = SLOT_BY_FIELD.get(field_no)
    if slot_no is None:
        return {
            "slot": None,
            "value": snapshot.value(field_no),
            "current": None,
            "power": None,
            "cost_per_hour": None,
        }

    current, power = snapshot.slot(slot_no)
    return {
        "slot": slot_no,
        "value": snapshot.value(field_no),
        "current": round(current, 2),
        "power": round(power, 2),
        "cost_per_hour": round((power / 1000.0) * tariff_per_kwh, 2),
    }


def map_loads(loads: list[dict[str, Any]], snapshot: Snapshot, tariff_per_kwh: float) -> dict[str, Any]:
    """Attach live readings to a user's loads and total them.

    Two loads on the current and power field of the same slot describe the
    same physical output, so totals count every slot once.
    """

    mapped = []
    seen_slots = set()
    total_power = 0.0
    total_current = 0.0

    for load in loads:
        try:
            field_no = int(load.get("field"))
        except (TypeError, ValueError):
            field_no = None

        if field_no is None or field_no not in LOAD_FIELDS:
            reading = {"slot": None, "value": None, "current": None, "power": None, "cost_per_hour": None}
        else:
            reading = reading_for_field(snapshot, field_no, tariff_per_kwh)

        slot_no = reading["slot"]
        if slot_no is not None and slot_no not in seen_slots:
            seen_slots.add(slot_no)
            total_power += reading["power"]
            total_current += reading["current"]

        mapped.append({**load, **reading})

    return {
        "loads": mapped,
        "totals": {
            "power": round(total_power, 2),
            "current": round(total_current, 2),
            "cost_per_hour": round((total_power / 1000.0) * tariff_per_kwh, 2),
        },
    }


class ThingSpeakClient:
    """Minimal ThingSpeak REST client (channel feed read + update write)."""

    def __init__(self,
                 base_url: str,
                 channel_id: str,
                 read_key: str = "",
                 write_key: str = "",
                 timeout_seconds: float = 10,
                 default_limit: float = 1000.0,
                 session: Optional[requests.Session] = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.channel_id = channel_id
        self.read_key = read_key
        self.write_key = write_key
        self.timeout_seconds = timeout_seconds
        self.default_limit = default_limit
        self._session = session or requests.Session()

    def fetch_latest(self) -> Snapshot:
        if not self.channel_id:
            raise TelemetryError("No ThingSpeak channel configured")

        url = f"{self.base_url}/channels/{self.channel_id}/feeds.json"
        params: dict[str, Any] = {"results": 1}
        if self.read_key:
            params["api_key"] = self.read_key

        try:
            res = self._session.get(url, params=params, timeout=self.timeout_seconds)
            res.raise_for_status()
            payload = res.json()
        except requests.RequestException as e:
            raise TelemetryError(f"ThingSpeak read failed: {e}") from e
        except ValueError as e:
            raise TelemetryError(f"ThingSpeak returned invalid JSON: {e}") from e

        return parse_feed(payload, self.default_limit)

    def write_fields(self, values: dict[int, float], write_key: Optional[str] = None) -> int:
        """Write one channel entry and return its entry id."""

        key = write_key or self.write_key
        if not key:
            raise TelemetryError("No ThingSpeak write key configured")
        if not values:
            raise TelemetryError("Nothing to write")

        params = {"api_key": key}
        for field_no, value in values.items():
            params[f"field{int(field_no)}"] = _format_value(value)

        try:
            res = self._session.get(f"{self.base_url}/update", params=params, timeout=self.timeout_seconds)
            res.raise_for_status()
        except requests.RequestException as e:
            raise TelemetryError(f"ThingSpeak write failed: {e}") from e

        body = (res.text or "").strip()
        try:
            entry_id = int(body)
        except ValueError:
            raise TelemetryError(f"Unexpected ThingSpeak update response: {body[:80]!r}")

        # ThingSpeak answers 0 when the update was rejected (e.g. rate limited).
        if entry_id == 0:
            raise TelemetryError("ThingSpeak rejected the update, try again in a few seconds")
        return entry_id

    def update_limit(self, limit: Any) -> int:
        limit = validate_limit(limit)
        entry_id = self.write_fields({LIMIT_FIELD: limit})
        logger.info(f"Permissible limit updated to {limit} W (entry {entry_id})")
        return entry_id


class RateLimitedLogger:
    """Logs a repeated message at most once per interval, with a running count."""

    def __init__(self, log: logging.Logger, interval_seconds: float = 300) -> None:
        self._log = log
        self._interval = interval_seconds
        self._state: dict[str, dict[str, float | int]] = {}

    def error(self, message: str) -> None:
        now = time.time()
        st = self._state.setdefault(message, {"count": 0, "last_log": 0.0})
        st["count"] = int(st["count"]) + 1

        if float(st["last_log"]) == 0.0 or now - float(st["last_log"]) >= self._interval:
            self._log.error(f"{message} (failure #{int(st['count'])})")
            st["last_log"] = now


class TelemetryPoller(threading.Thread):
    """Polls the feed periodically and keeps the latest snapshot.

    Each successful poll is also reconciled into the stored loads so that
    power/current/cost on the load documents follow the live feed.
    """

    def __init__(self, client: ThingSpeakClient, store=None, interval_seconds: float = 20,
                 tariff_per_kwh: float = 0.0) -> None:
        super().__init__(daemon=True, name="telemetry-poller")
        self._client = client
        self._store = store
        self._interval = interval_seconds
        self._tariff = tariff_per_kwh
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._reporter = RateLimitedLogger(logger)

        self._snapshot: Optional[Snapshot] = None
        self._last_success: Optional[float] = None
        self._last_error: Optional[str] = None
        self._last_error_at: Optional[float] = None
        self._poll_count = 0

    def poll_once(self) -> Optional[Snapshot]:
        try:
            snapshot = self._client.fetch_latest()
        except TelemetryError as e:
            with self._lock:
                self._poll_count += 1
                self._last_error = str(e)
                self._last_error_at = time.time()
            self._reporter.error(str(e))
            return None

        with self._lock:
            self._poll_count += 1
            self._snapshot = snapshot
            self._last_success = snapshot.fetched_at

        if self._store is not None:
            try:
                self._store.apply_readings(snapshot, self._tariff)
            except PyMongoError as e:
                self._reporter.error(f"MongoDB error while saving readings: {e}")

        return snapshot

    def latest(self) -> Optional[Snapshot]:
        with self._lock:
            return self._snapshot

    def status(self) -> dict[str, Any]:
        with self._lock:
            return {
                "running": self.is_alive(),
                "interval_seconds": self._interval,
                "poll_count": self._poll_count,
                "last_success": datetime.fromtimestamp(self._last_success).isoformat() if self._last_success else None,
                "last_error": self._last_error,
                "last_error_at": datetime.fromtimestamp(self._last_error_at).isoformat() if self._last_error_at else None,
            }

    def run(self) -> None:
        logger.info(f"Telemetry poller started (every {self._interval}s)")
        while not self._stop_event.is_set():
            try:
                self.poll_once()
            except Exception as e:
                with self._lock:
                    self._last_error = str(e)
                    self._last_error_at = time.time()
                self._reporter.error(f"Error in telemetry poll: {e}")
            self._stop_event.wait(self._interval)
        logger.info("Telemetry poller stopped")

    def stop(self) -> None:
        self._stop_event.set()
