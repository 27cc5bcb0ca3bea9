"""Migration script: normalise legacy load documents.

Older versions of the add-load page stored `field` as a string and left out
`status`, `power`, `current` and `cost`; some imports carry the owner in
`uid` instead of `user_id`. This script brings every load document into the
current shape. Loads whose field cannot be used (not a number, field 4, out
of range, or already taken by another load of the same user) are reported
and left untouched.

Usage:
    python -m powerpal.migrate_loads            # dry run
    python -m powerpal.migrate_loads --execute
"""

import sys

from pymongo import MongoClient
from pymongo.errors import DuplicateKeyError

from powerpal import config
from powerpal.mongodb import LOAD_STATUSES, LOADS_COLLECTION
from powerpal.telemetry import LOAD_FIELDS

DEFAULT_NUMBERS = ("power", "current", "cost")


def _normalise(doc):
    """Return (changes, problem) for one load document."""
    changes = {}

    if not doc.get("user_id") and doc.get("uid"):
        changes["user_id"] = doc["uid"]

    field_value = doc.get("field")
    try:
        field_no = int(str(field_value).strip())
    except (TypeError, ValueError):
        return changes, f"field {field_value!r} is not a number"
    if field_no not in LOAD_FIELDS:
        return changes, f"field {field_no} cannot be mapped to a load"
    if field_no != field_value:
        changes["field"] = field_no

    if doc.get("status") not in LOAD_STATUSES:
        changes["status"] = "auto"

    for key in DEFAULT_NUMBERS:
        if not isinstance(doc.get(key), (int, float)) or isinstance(doc.get(key), bool):
            changes[key] = 0

    return changes, None


def migrate_loads(db, dry_run: bool = True) -> dict:
    """Normalise all documents in the loads collection of `db`."""

    coll = db[LOADS_COLLECTION]
    docs = list(coll.find({}))
    print(f"Found {len(docs)} load documents")

    # fields already in use per user, in their normalised form;
    # a document that already stores an int field keeps it
    taken = {}
    int_ids = set()
    for doc in docs:
        try:
            field_no = int(str(doc.get("field")).strip())
        except (TypeError, ValueError):
            continue
        owner = doc.get("user_id") or doc.get("uid")
        taken.setdefault((owner, field_no), []).append(doc["_id"])
        if type(doc.get("field")) is int:
            int_ids.add(doc["_id"])
    for ids in taken.values():
        ids.sort(key=lambda doc_id: doc_id not in int_ids)

    summary = {"scanned": len(docs), "updated": 0, "unchanged": 0, "skipped": []}

    for doc in docs:
        changes, problem = _normalise(doc)
        owner = changes.get("user_id") or doc.get("user_id")
        name = doc.get("name", doc["_id"])

        if problem is None:
            field_no = changes.get("field", doc.get("field"))
            owners_of_field = taken.get((owner, field_no), [])
            if len(owners_of_field) > 1 and owners_of_field[0] != doc["_id"]:
                problem = f"field {field_no} is already used by another load"

        if problem:
            print(f"   ⚠️  {name}: {problem} - skipped")
            summary["skipped"].append(doc["_id"])
            continue

        if not changes:
            summary["unchanged"] += 1
            continue

        if dry_run:
            print(f"   🔄 {name}: would set {changes}")
        else:
            try:
                coll.update_one({"_id": doc["_id"]}, {"$set": changes})
            except DuplicateKeyError as e:
                print(f"   ⚠️  {name}: {e} - skipped")
                summary["skipped"].append(doc["_id"])
                continue
            print(f"   ✅ {name}: updated {changes}")
        summary["updated"] += 1

    print(f"\n{'[DRY RUN] ' if dry_run else ''}Total updates: {summary['updated']}")
    if dry_run and summary["updated"] > 0:
        print("\n⚠️  Run again with --execute to apply the changes")
    return summary


if __name__ == "__main__":
    dry_run = "--execute" not in sys.argv

    if dry_run:
        print("=" * 60)
        print("DRY RUN MODE - no changes will be saved")
        print("Use --execute to run the migration")
        print("=" * 60)
    else:
        print("=" * 60)
        print("EXECUTE MODE - changes will be written to the database!")
        print("=" * 60)

    print()
    client = MongoClient(config.MONGO_URI, serverSelectionTimeoutMS=5000)
    try:
        migrate_loads(client[config.MONGO_DB], dry_run=dry_run)
    finally:
        client.close()
