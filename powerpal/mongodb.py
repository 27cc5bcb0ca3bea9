"""MongoDB storage for users and their loads.

Structure
---------
- Database: `powerpal` (``MONGO_DB``)
- Collection `users`: one document per account
  { _id, email, password_hash, disabled, created_at }
- Collection `loads`: one document per configured load
  { _id, user_id, name, field, status, power, current, cost, created_at, updated_at }

A user can map each telemetry field to at most one load.

Run as a script to list the stored loads:
    python -m powerpal.mongodb [email]
"""

from __future__ import annotations

import logging
import sys
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from pymongo import ASCENDING, MongoClient
from pymongo.errors import DuplicateKeyError

from powerpal import config
from powerpal.errors import AuthError, LoadError
from powerpal.telemetry import LIMIT_FIELD, LOAD_FIELDS, reading_for_field

logger = logging.getLogger(__name__)

USERS_COLLECTION = "users"
LOADS_COLLECTION = "loads"

LOAD_STATUSES = ("on", "off", "auto")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def parse_field(value: Any) -> int:
    """Validate a telemetry field number chosen for a load."""

    if isinstance(value, bool):
        raise LoadError("Field must be a number")
    try:
        field_no = int(str(value).strip())
    except (TypeError, ValueError):
        raise LoadError("Field must be a number")

    if field_no == LIMIT_FIELD:
        raise LoadError(f"Field {LIMIT_FIELD} is reserved for the permissible limit")
    if field_no not in LOAD_FIELDS:
        raise LoadError(f"Field must be one of {', '.join(str(f) for f in LOAD_FIELDS)}")
    return field_no


def _clean_name(name: Any) -> str:
    name = str(name or "").strip()
    if not name:
        raise LoadError("Load name is required")
    return name


def serialize_load(doc: dict[str, Any]) -> dict[str, Any]:
    """JSON-friendly copy of a load document."""

    out = {k: v for k, v in doc.items() if k != "_id"}
    out["id"] = doc["_id"]
    for key in ("created_at", "updated_at"):
        if isinstance(out.get(key), datetime):
            out[key] = out[key].isoformat()
    return out


class LoadStore:
    """Users and loads in MongoDB."""

    def __init__(self, client: MongoClient | None = None, uri: str = config.MONGO_URI,
                 db_name: str = config.MONGO_DB) -> None:
        self._owns_client = client is None
        self._client = client or MongoClient(uri, serverSelectionTimeoutMS=5000, maxPoolSize=50)
        self._db = self._client[db_name]
        self.users = self._db[USERS_COLLECTION]
        self.loads = self._db[LOADS_COLLECTION]

    def ensure_indexes(self) -> None:
        """Safe to call repeatedly."""
        self.users.create_index([("email", ASCENDING)], unique=True)
        self.loads.create_index([("user_id", ASCENDING), ("field", ASCENDING)], unique=True)

    def ping(self) -> bool:
        try:
            self._client.admin.command("ping")
            return True
        except Exception as e:
            logger.error(f"MongoDB ping failed: {e}")
            return False

    def close(self) -> None:
        """Close the client only if we own it (created internally)."""
        if self._owns_client:
            self._client.close()

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, email: str, password_hash: str) -> dict[str, Any]:
        if self.get_user_by_email(email):
            raise AuthError("auth/email-already-in-use",
                            "The email address is already in use by another account.")
        doc = {
            "_id": str(uuid.uuid4()),
            "email": email,
            "password_hash": password_hash,
            "disabled": False,
            "created_at": _now(),
        }
        try:
            self.users.insert_one(doc)
        except DuplicateKeyError:
            raise AuthError("auth/email-already-in-use",
                            "The email address is already in use by another account.")
        logger.info(f"Created user {email}")
        return doc

    def get_user_by_email(self, email: str) -> Optional[dict[str, Any]]:
        return self.users.find_one({"email": email})

    def get_user(self, uid: str) -> Optional[dict[str, Any]]:
        return self.users.find_one({"_id": uid})

    # ------------------------------------------------------------------
    # Loads
    # ------------------------------------------------------------------

    def list_loads(self, uid: str) -> list[dict[str, Any]]:
        return list(self.loads.find({"user_id": uid}).sort("field", ASCENDING))

    def get_load(self, uid: str, load_id: str) -> Optional[dict[str, Any]]:
        return self.loads.find_one({"_id": load_id, "user_id": uid})

    def count_loads(self) -> int:
        return self.loads.count_documents({})

    def available_fields(self, uid: str) -> list[int]:
        used = {doc.get("field") for doc in self.loads.find({"user_id": uid}, {"field": 1})}
        return [f for f in LOAD_FIELDS if f not in used]

    def _field_taken(self, uid: str, field_no: int, exclude_id: Optional[str] = None) -> bool:
        query: dict[str, Any] = {"user_id": uid, "field": field_no}
        if exclude_id is not None:
            query["_id"] = {"$ne": exclude_id}
        return self.loads.find_one(query, {"_id": 1}) is not None

    def add_load(self, uid: str, name: Any, field_no: Any) -> dict[str, Any]:
        name = _clean_name(name)
        field_no = parse_field(field_no)

        if self._field_taken(uid, field_no):
            raise LoadError(f"Field {field_no} is already mapped to another load", status=409)

        now = _now()
        doc = {
            "_id": str(uuid.uuid4()),
            "user_id": uid,
            "name": name,
            "field": field_no,
            "status": "auto",
            "power": 0,
            "current": 0,
            "cost": 0,
            "created_at": now,
            "updated_at": now,
        }
        try:
            self.loads.insert_one(doc)
        except DuplicateKeyError:
            raise LoadError(f"Field {field_no} is already mapped to another load", status=409)

        logger.info(f"Added load '{name}' on field {field_no} for user {uid}")
        return doc

    def update_load(self, uid: str, load_id: str, name: Any = None, field_no: Any = None) -> dict[str, Any]:
        existing = self.get_load(uid, load_id)
        if not existing:
            raise LoadError("Load not found", status=404)

        changes: dict[str, Any] = {}
        if name is not None:
            changes["name"] = _clean_name(name)
        if field_no is not None:
            field_no = parse_field(field_no)
            if field_no != existing.get("field"):
                if self._field_taken(uid, field_no, exclude_id=load_id):
                    raise LoadError(f"Field {field_no} is already mapped to another load", status=409)
                changes["field"] = field_no

        if not changes:
            return existing

        changes["updated_at"] = _now()
        try:
            self.loads.update_one({"_id": load_id, "user_id": uid}, {"$set": changes})
        except DuplicateKeyError:
            raise LoadError(f"Field {field_no} is already mapped to another load", status=409)

        logger.info(f"Updated load {load_id} for user {uid}: {sorted(changes)}")
        existing.update(changes)
        return existing

    def delete_load(self, uid: str, load_id: str) -> bool:
        result = self.loads.delete_one({"_id": load_id, "user_id": uid})
        if result.deleted_count > 0:
            logger.info(f"Deleted load {load_id} for user {uid}")
            return True
        return False

    def set_status(self, uid: str, load_id: str, status: str) -> dict[str, Any]:
        if status not in LOAD_STATUSES:
            raise LoadError(f"Status must be one of {', '.join(LOAD_STATUSES)}")

        result = self.loads.update_one(
            {"_id": load_id, "user_id": uid},
            {"$set": {"status": status, "updated_at": _now()}},
        )
        if result.matched_count == 0:
            raise LoadError("Load not found", status=404)
        return self.get_load(uid, load_id)

    def apply_readings(self, snapshot, tariff_per_kwh: float) -> int:
        """Copy live readings onto every load mapped to each field.

        Returns the number of load documents modified.
        """

        now = _now()
        modified = 0
        for field_no in LOAD_FIELDS:
            reading = reading_for_field(snapshot, field_no, tariff_per_kwh)
            res = self.loads.update_many(
                {"field": field_no},
                {"$set": {
                    "value": reading["value"],
                    "power": reading["power"] or 0,
                    "current": reading["current"] or 0,
                    "cost": reading["cost_per_hour"] or 0,
                    "updated_at": now,
                }},
            )
            modified += res.modified_count
        return modified


def list_loads(email: Optional[str] = None) -> None:
    store = LoadStore()
    try:
        query = {"email": email.strip().lower()} if email else {}
        users = list(store.users.find(query, {"password_hash": 0}))
        print(f"Users: {len(users)}")

        for user in users:
            loads = store.list_loads(user["_id"])
            flag = " (disabled)" if user.get("disabled") else ""
            print(f"- {user.get('email')}{flag}: {len(loads)} loads")
            for load in loads:
                print(
                    f"    field {load.get('field')}: {load.get('name')} "
                    f"[{load.get('status')}] power={load.get('power')}W current={load.get('current')}A "
                    f"cost={load.get('cost')}/h"
                )
    finally:
        store.close()


if __name__ == "__main__":
    list_loads(sys.argv[1] if len(sys.argv) > 1 else None)
