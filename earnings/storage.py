import logging
import threading
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from .config import Settings, get_settings
from .models import SystemSettings
from .security import hash_password

logger = logging.getLogger(__name__)

COLLECTIONS = (
    "users",
    "deposits",
    "withdrawals",
    "coin_purchases",
    "plans",
    "user_plans",
    "daily_reward_claims",
    "spin_results",
    "transactions",
)


class InMemoryStorage:
    """Record collections keyed by auto-incrementing ids plus the settings singleton.

    Every read-modify-write against the store must hold ``lock``.
    """

    def __init__(self, seed: bool = True, config: Optional[Settings] = None):
        self.lock = threading.RLock()
        self.users: dict[int, dict] = {}
        self.deposits: dict[int, dict] = {}
        self.withdrawals: dict[int, dict] = {}
        self.coin_purchases: dict[int, dict] = {}
        self.plans: dict[int, dict] = {}
        self.user_plans: dict[int, dict] = {}
        self.daily_reward_claims: dict[int, dict] = {}
        self.spin_results: dict[int, dict] = {}
        self.transactions: dict[int, dict] = {}
        self.settings: dict = SystemSettings().model_dump()
        self._next_ids: dict[str, int] = {name: 1 for name in COLLECTIONS}
        if seed:
            self._seed_data(config or get_settings())

    def _seed_data(self, config: Settings):
        self.insert("users", {
            "email": config.admin_email,
            "password_hash": hash_password(config.admin_password),
            "name": config.admin_name,
            "is_admin": True,
            "referral_code": "ADMIN2024",
            "referred_by": None,
            "pkr_balance": Decimal("0.00"),
            "coin_balance": 0,
            "created_at": datetime.now(timezone.utc),
        })

        self.insert("plans", {
            "name": "Starter Plan",
            "description": "Perfect for beginners looking to start their earning journey",
            "price": Decimal("1000"), "coin_requirement": 50,
            "duration_days": 30, "profit_rate": Decimal("10"), "is_active": True,
        })
        self.insert("plans", {
            "name": "Growth Plan",
            "description": "Accelerate your earnings with better returns",
            "price": Decimal("5000"), "coin_requirement": 200,
            "duration_days": 45, "profit_rate": Decimal("15"), "is_active": True,
        })
        self.insert("plans", {
            "name": "Premium Plan",
            "description": "Maximum profits for serious investors",
            "price": Decimal("10000"), "coin_requirement": 500,
            "duration_days": 60, "profit_rate": Decimal("20"), "is_active": True,
        })

    def collection(self, name: str) -> dict[int, dict]:
        if name not in COLLECTIONS:
            raise KeyError(f"Unknown collection {name}")
        return getattr(self, name)

    def insert(self, name: str, record: dict) -> dict:
        with self.lock:
            record_id = self._next_ids[name]
            self._next_ids[name] = record_id + 1
            record = {"id": record_id, **record}
            self.collection(name)[record_id] = record
            return record

    def records(self, name: str) -> list[dict]:
        """Snapshot of a collection's records, safe to iterate while others write."""
        with self.lock:
            return list(self.collection(name).values())

    def where(self, name: str, **criteria) -> list[dict]:
        return [
            r for r in self.records(name)
            if all(r.get(k) == v for k, v in criteria.items())
        ]

    def find_user_by_email(self, email: str) -> Optional[dict]:
        email = email.strip().lower()
        for user in self.records("users"):
            if user["email"].lower() == email:
                return user
        return None

    def find_user_by_referral_code(self, code: str) -> Optional[dict]:
        for user in self.records("users"):
            if user["referral_code"] == code:
                return user
        return None

    def replace_all(self, collections: dict[str, list[dict]], settings: dict) -> None:
        """Swap every collection and the settings record in one step."""
        with self.lock:
            for name in COLLECTIONS:
                records = collections.get(name, [])
                setattr(self, name, {r["id"]: r for r in records})
                self._next_ids[name] = max((r["id"] for r in records), default=0) + 1
            self.settings = settings
        logger.info(
            "Store replaced: %s",
            ", ".join(f"{name}={len(self.collection(name))}" for name in COLLECTIONS),
        )
