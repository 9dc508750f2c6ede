import argparse
import asyncio
import json
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from bson import ObjectId
from dotenv import load_dotenv
from pymongo import MongoClient

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))
from duplication_service import DEFAULT_MAX_ATTEMPTS, RecordDuplicator, success_message
from entity_types import UnknownEntityTypeError, edit_path, get_entity_spec


def parse_overrides(pairs: List[str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    for pair in pairs:
        field, sep, raw = pair.partition("=")
        if not sep or not field.strip():
            raise ValueError(f"Override must look like field=value, got {pair!r}")
        try:
            value: Any = json.loads(raw)
        except ValueError:
            value = raw
        overrides[field.strip()] = value
    return overrides


def load_source_from_mongo(collection: str, record_id: str) -> Optional[Dict[str, Any]]:
    mongo_url = os.getenv("MONGO_URL")
    db_name = os.getenv("DB_NAME", "tuition_management")
    if not mongo_url:
        raise RuntimeError("MONGO_URL is required when using --id")

    client = MongoClient(mongo_url)
    try:
        query: Dict[str, Any] = {"_id": record_id}
        if ObjectId.is_valid(record_id):
            query = {"_id": {"$in": [ObjectId(record_id), record_id]}}
        return client[db_name][collection].find_one(query)
    finally:
        client.close()


def main() -> None:
    load_dotenv(BACKEND_DIR / ".env")

    parser = argparse.ArgumentParser(description="Duplicate a tuition record through the REST create endpoint.")
    parser.add_argument("--entity-type", required=True, help="Student, Teacher, CustomerPolicy, ...")
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--id", dest="record_id", help="Load the source record from MongoDB by _id")
    source.add_argument("--file", type=Path, help="Read the source record from a JSON file")
    parser.add_argument(
        "--set",
        dest="overrides",
        action="append",
        default=[],
        metavar="FIELD=VALUE",
        help="Field value to force on the copy (repeatable)",
    )
    parser.add_argument("--base-url", default=os.getenv("APP_API_BASE_URL", "http://localhost:3000"))
    parser.add_argument("--token", default=os.getenv("APP_API_TOKEN"), help="Bearer token for the API")
    parser.add_argument(
        "--max-attempts",
        type=int,
        default=int(os.getenv("DUPLICATE_MAX_ATTEMPTS", str(DEFAULT_MAX_ATTEMPTS))),
    )
    args = parser.parse_args()

    try:
        spec = get_entity_spec(args.entity_type)
        overrides = parse_overrides(args.overrides)
    except (UnknownEntityTypeError, ValueError) as exc:
        parser.error(str(exc))

    if args.file:
        record = json.loads(args.file.read_text(encoding="utf-8"))
    else:
        record = load_source_from_mongo(spec.collection, args.record_id)
        if record is None:
            print(f"{spec.label} {args.record_id} not found")
            sys.exit(1)

    duplicator = RecordDuplicator(
        base_url=args.base_url,
        auth_token=args.token,
        max_attempts=args.max_attempts,
    )
    result = asyncio.run(duplicator.duplicate(record, spec.entity_type, overrides))
    if not result.ok:
        print(f"Duplicate failed after {result.attempts} attempt(s): {result.error}")
        sys.exit(1)

    created_id = result.record.get("_id")
    print(success_message(result.record, spec.entity_type))
    print(f"ID: {created_id}")
    if created_id:
        print(f"Edit: {edit_path(spec.entity_type, created_id)}")


if __name__ == "__main__":
    main()
