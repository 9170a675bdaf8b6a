"""
JSON backup export and import.

A backup is one JSON document with a top-level array per collection, the
settings singleton wrapped in a one-element ``systemSettings`` array, and an
ISO-8601 ``exportDate``. Import validates the whole document before it
touches the store and then replaces every collection at once.
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

from pydantic import ValidationError

from .models import (
    User,
    Deposit,
    Withdrawal,
    CoinPurchase,
    Plan,
    UserPlan,
    DailyRewardClaim,
    SpinResult,
    Transaction,
    SystemSettings,
)
from .service import InvalidInputError
from .storage import InMemoryStorage

logger = logging.getLogger(__name__)

# backup key -> (storage collection, record model)
BACKUP_COLLECTIONS = {
    "users": ("users", User),
    "deposits": ("deposits", Deposit),
    "withdrawals": ("withdrawals", Withdrawal),
    "coinPurchases": ("coin_purchases", CoinPurchase),
    "plans": ("plans", Plan),
    "userPlans": ("user_plans", UserPlan),
    "dailyRewardClaims": ("daily_reward_claims", DailyRewardClaim),
    "spinResults": ("spin_results", SpinResult),
    "transactions": ("transactions", Transaction),
}

# Backups written before coin purchases existed do not carry them.
OPTIONAL_KEYS = {"coinPurchases"}


class BackupFormatError(InvalidInputError):
    pass


def export_backup(storage: InMemoryStorage, now: Optional[datetime] = None) -> dict:
    with storage.lock:
        document = {
            key: [
                model(**record).model_dump(mode="json", by_alias=True)
                for record in storage.collection(name).values()
            ]
            for key, (name, model) in BACKUP_COLLECTIONS.items()
        }
        document["systemSettings"] = [
            SystemSettings(**storage.settings).model_dump(mode="json", by_alias=True)
        ]
    document["exportDate"] = (now or datetime.now(timezone.utc)).isoformat()
    return document


def dumps_backup(storage: InMemoryStorage, now: Optional[datetime] = None) -> str:
    return json.dumps(export_backup(storage, now), indent=2, ensure_ascii=False)


def backup_filename(now: Optional[datetime] = None) -> str:
    return f"rtr-backup-{(now or datetime.now(timezone.utc)).date().isoformat()}.json"


def import_backup(storage: InMemoryStorage, document: Union[dict, str, bytes]) -> dict[str, int]:
    """Replace the whole store with the contents of a backup document.

    Raises BackupFormatError, leaving the store untouched, when the document
    is not valid JSON, misses a required array, holds no settings record or
    contains a record that does not parse.
    """
    if isinstance(document, (str, bytes)):
        try:
            document = json.loads(document)
        except json.JSONDecodeError as e:
            raise BackupFormatError(f"Backup is not valid JSON: {e}") from e

    if not isinstance(document, dict):
        raise BackupFormatError("Invalid backup file format")

    for key in [*BACKUP_COLLECTIONS, "systemSettings"]:
        if key in OPTIONAL_KEYS and key not in document:
            continue
        if not isinstance(document.get(key), list):
            raise BackupFormatError(f"Backup is missing {key} data")

    if not document["systemSettings"]:
        raise BackupFormatError("Backup contains no system settings - this would render the app unusable")

    collections = {}
    counts = {}
    for key, (name, model) in BACKUP_COLLECTIONS.items():
        records = _parse_records(key, model, document.get(key, []))
        collections[name] = records
        counts[key] = len(records)

    try:
        settings = SystemSettings.model_validate(document["systemSettings"][0]).model_dump()
    except ValidationError as e:
        raise BackupFormatError(f"Invalid systemSettings record: {e}") from e

    storage.replace_all(collections, settings)
    logger.info("Backup imported (exported %s): %s", document.get("exportDate", "unknown"), counts)
    return counts


def _parse_records(key: str, model, raw_records: list) -> list[dict]:
    records = []
    seen_ids = set()
    for index, raw in enumerate(raw_records):
        try:
            record = model.model_validate(raw).model_dump()
        except ValidationError as e:
            raise BackupFormatError(f"Invalid {key} record at index {index}: {e}") from e
        if record["id"] in seen_ids:
            raise BackupFormatError(f"Duplicate id {record['id']} in {key}")
        seen_ids.add(record["id"])
        records.append(record)
    return records


def save_backup(storage: InMemoryStorage, path: Union[str, Path]) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    tmp_path.write_text(dumps_backup(storage), encoding="utf-8")
    tmp_path.replace(path)
    logger.info("Backup written to %s", path)
    return path


def load_backup(storage: InMemoryStorage, path: Union[str, Path]) -> Optional[dict[str, int]]:
    path = Path(path)
    if not path.exists():
        logger.info("No backup at %s; starting from seed data", path)
        return None
    return import_backup(storage, path.read_text(encoding="utf-8"))
