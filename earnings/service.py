import logging
import random
import secrets
import string
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_DOWN
from typing import Callable, Optional

from .config import Settings, get_settings
from .models import (
    RequestKind,
    RequestStatus,
    TransactionType,
    User,
    UserProfile,
    Deposit,
    Withdrawal,
    CoinPurchase,
    Plan,
    UserPlan,
    Transaction,
    SystemSettings,
    PublicSettings,
    RegisterRequest,
    CreateDepositRequest,
    CreateWithdrawalRequest,
    CreateCoinPurchaseRequest,
    PlanCreateRequest,
    PlanUpdateRequest,
    BalanceAdjustmentRequest,
    SettingsUpdateRequest,
    RequestResponse,
    AdminRequestItem,
    PurchaseResponse,
    AccrualEntry,
    AccrualReport,
    DailyRewardStatus,
    SpinStatus,
    RewardResponse,
    UserStats,
    AdminStats,
    AdminUserSummary,
    TransactionHistoryResponse,
)
from .security import hash_password, verify_password
from .storage import InMemoryStorage

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
REWARD_COOLDOWN = timedelta(hours=24)
REFERRAL_CODE_ALPHABET = string.ascii_uppercase + string.digits


class EarningsServiceError(Exception):
    pass


class InvalidInputError(EarningsServiceError):
    pass


class AuthenticationError(EarningsServiceError):
    pass


class NotFoundError(EarningsServiceError):
    pass


class UserNotFoundError(NotFoundError):
    pass


class PlanNotFoundError(NotFoundError):
    pass


class RequestNotFoundError(NotFoundError):
    pass


class PreconditionError(EarningsServiceError):
    pass


class PlanInactiveError(PreconditionError):
    pass


class InsufficientBalanceError(PreconditionError):
    pass


class InsufficientCoinsError(PreconditionError):
    pass


class CooldownActiveError(PreconditionError):
    pass


class FeatureDisabledError(PreconditionError):
    pass


_REQUEST_TYPES = {
    RequestKind.DEPOSIT: ("deposits", Deposit),
    RequestKind.WITHDRAWAL: ("withdrawals", Withdrawal),
    RequestKind.COIN_PURCHASE: ("coin_purchases", CoinPurchase),
}


def format_pkr(amount: Decimal) -> str:
    """Render an amount the way the dashboard shows it, e.g. ``₨1,234.50``."""
    amount = Decimal(amount)
    if amount == amount.to_integral_value():
        return f"₨{amount:,.0f}"
    return f"₨{amount:,.2f}"


def _to_cents(amount: Decimal) -> Decimal:
    return amount.quantize(CENT, rounding=ROUND_DOWN)


class EarningsService:
    def __init__(
        self,
        storage: Optional[InMemoryStorage] = None,
        config: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
        rng: Optional[random.Random] = None,
    ):
        self.config = config or get_settings()
        self.storage = storage or InMemoryStorage(config=self.config)
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.rng = rng or random.SystemRandom()

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def register(self, request: RegisterRequest) -> UserProfile:
        email = request.email.strip().lower()
        referral_code = (request.referral_code or "").strip() or None

        with self.storage.lock:
            if self.storage.find_user_by_email(email):
                raise InvalidInputError("Email already registered")

            referrer = None
            if referral_code:
                referrer = self.storage.find_user_by_referral_code(referral_code)
                if not referrer:
                    raise InvalidInputError("Invalid referral code")

            user_data = self.storage.insert("users", {
                "email": email,
                "password_hash": hash_password(request.password),
                "name": request.name.strip(),
                "is_admin": False,
                "referral_code": self._generate_referral_code(),
                "referred_by": referrer["referral_code"] if referrer else None,
                "pkr_balance": ZERO,
                "coin_balance": 0,
                "created_at": self.clock(),
            })

        logger.info("Registered user %s (referred by %s)", user_data["id"], user_data["referred_by"])
        return UserProfile(**user_data)

    def authenticate(self, email: str, password: str) -> UserProfile:
        user_data = self.storage.find_user_by_email(email)
        if not user_data or not verify_password(password, user_data["password_hash"]):
            raise AuthenticationError("Invalid email or password")
        return UserProfile(**user_data)

    def get_user(self, user_id: int) -> User:
        return User(**self._user_data(user_id))

    def get_profile(self, user_id: int) -> UserProfile:
        return UserProfile(**self._user_data(user_id))

    def referral_link(self, user_id: int) -> str:
        user_data = self._user_data(user_id)
        return f"{self.config.frontend_url.rstrip('/')}/?ref={user_data['referral_code']}"

    def _generate_referral_code(self) -> str:
        while True:
            code = "REF" + "".join(secrets.choice(REFERRAL_CODE_ALPHABET) for _ in range(8))
            if not self.storage.find_user_by_referral_code(code):
                return code

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def get_system_settings(self) -> SystemSettings:
        return SystemSettings(**self.storage.settings)

    def get_public_settings(self) -> PublicSettings:
        return PublicSettings(**self.storage.settings)

    def update_settings(self, request: SettingsUpdateRequest) -> SystemSettings:
        updates = request.model_dump(exclude_unset=True, exclude_none=True)
        with self.storage.lock:
            merged = SystemSettings(**{**self.storage.settings, **updates})

            if merged.coin_rate <= 0:
                raise InvalidInputError("Coin rate must be positive")
            if not (0 <= merged.referral_percentage <= 100):
                raise InvalidInputError("Referral percentage must be between 0 and 100")
            if merged.daily_reward_amount < 0:
                raise InvalidInputError("Daily reward amount cannot be negative")
            if not merged.spin_wheel_values or any(v <= 0 for v in merged.spin_wheel_values):
                raise InvalidInputError("Spin wheel values must be a non-empty list of positive amounts")
            if merged.min_withdrawal <= 0 or merged.min_withdrawal > merged.max_withdrawal:
                raise InvalidInputError("Withdrawal limits must satisfy 0 < min <= max")

            self.storage.settings = merged.model_dump()

        logger.info("Settings updated: %s", sorted(updates))
        return merged

    # ------------------------------------------------------------------
    # Deposits, withdrawals and coin purchases
    # ------------------------------------------------------------------

    def create_deposit(self, user_id: int, request: CreateDepositRequest) -> Deposit:
        with self.storage.lock:
            self._user_data(user_id)
            data = self.storage.insert("deposits", {
                "user_id": user_id,
                "amount": request.amount,
                "method": request.method,
                "transaction_id": request.transaction_id,
                "screenshot": request.screenshot,
                "status": RequestStatus.PENDING,
                "created_at": self.clock(),
                "processed_at": None,
            })
        logger.info("Deposit %s requested by user %s for %s", data["id"], user_id, request.amount)
        return Deposit(**data)

    def create_withdrawal(self, user_id: int, request: CreateWithdrawalRequest) -> Withdrawal:
        settings = self.get_system_settings()
        if request.amount < settings.min_withdrawal:
            raise InvalidInputError(f"Minimum withdrawal amount is {format_pkr(settings.min_withdrawal)}")
        if request.amount > settings.max_withdrawal:
            raise InvalidInputError(f"Maximum withdrawal amount is {format_pkr(settings.max_withdrawal)}")

        with self.storage.lock:
            user_data = self._user_data(user_id)
            if user_data["pkr_balance"] < request.amount:
                raise InsufficientBalanceError("Insufficient balance")
            data = self.storage.insert("withdrawals", {
                "user_id": user_id,
                "amount": request.amount,
                "method": request.method,
                "account_details": request.account_details,
                "status": RequestStatus.PENDING,
                "created_at": self.clock(),
                "processed_at": None,
            })
        logger.info("Withdrawal %s requested by user %s for %s", data["id"], user_id, request.amount)
        return Withdrawal(**data)

    def create_coin_purchase(self, user_id: int, request: CreateCoinPurchaseRequest) -> CoinPurchase:
        settings = self.get_system_settings()
        if request.pkr_amount < settings.coin_rate:
            raise InvalidInputError(f"Minimum purchase amount is {format_pkr(settings.coin_rate)} (1 coin)")
        coin_amount = int(request.pkr_amount // settings.coin_rate)

        with self.storage.lock:
            self._user_data(user_id)
            data = self.storage.insert("coin_purchases", {
                "user_id": user_id,
                "pkr_amount": request.pkr_amount,
                "coin_amount": coin_amount,
                "method": request.method,
                "transaction_id": request.transaction_id,
                "screenshot": request.screenshot,
                "status": RequestStatus.PENDING,
                "created_at": self.clock(),
                "processed_at": None,
            })
        logger.info("Coin purchase %s requested by user %s: %s coins", data["id"], user_id, coin_amount)
        return CoinPurchase(**data)

    def list_requests(self, kind: RequestKind, user_id: Optional[int] = None) -> list:
        collection, model = _REQUEST_TYPES[RequestKind(kind)]
        records = self.storage.records(collection)
        if user_id is not None:
            records = [r for r in records if r["user_id"] == user_id]
        return [model(**r) for r in sorted(records, key=lambda r: r["created_at"], reverse=True)]

    def list_admin_requests(self, status: Optional[RequestStatus] = None) -> list[AdminRequestItem]:
        items = []
        with self.storage.lock:
            for kind in RequestKind:
                collection, _ = _REQUEST_TYPES[kind]
                for data in self.storage.records(collection):
                    if status is not None and data["status"] != status:
                        continue
                    user_data = self.storage.users.get(data["user_id"])
                    if kind == RequestKind.DEPOSIT:
                        amount, details = data["amount"], f"Transaction ID: {data['transaction_id']}"
                    elif kind == RequestKind.WITHDRAWAL:
                        amount, details = data["amount"], data["account_details"]
                    else:
                        amount = Decimal(data["coin_amount"])
                        details = (
                            f"{format_pkr(data['pkr_amount'])} for {data['coin_amount']} coins"
                            f" | Transaction ID: {data['transaction_id']}"
                        )
                    items.append(AdminRequestItem(
                        id=data["id"],
                        kind=kind,
                        user_id=data["user_id"],
                        user_name=user_data["name"] if user_data else "Unknown",
                        amount=amount,
                        method=data["method"],
                        details=details,
                        status=data["status"],
                        created_at=data["created_at"],
                    ))
        items.sort(key=lambda i: i.created_at, reverse=True)
        return items

    def approve_request(self, kind: RequestKind, request_id: int) -> RequestResponse:
        kind = RequestKind(kind)
        with self.storage.lock:
            data = self._request_data(kind, request_id)
            if data["status"] != RequestStatus.PENDING:
                logger.info("Skipping approval of %s %s: already %s", kind.value, request_id, data["status"].value)
                return self._request_response(kind, data, False, f"Request already {data['status'].value}")

            user_data = self.storage.users.get(data["user_id"])
            if not user_data:
                raise UserNotFoundError(f"User {data['user_id']} not found")

            now = self.clock()
            if kind == RequestKind.DEPOSIT:
                self._apply_deposit(data, user_data, now)
            elif kind == RequestKind.WITHDRAWAL:
                self._apply_withdrawal(data, user_data, now)
            else:
                self._apply_coin_purchase(data, user_data, now)

            data["status"] = RequestStatus.APPROVED
            data["processed_at"] = now

        return self._request_response(kind, data, True, f"{kind.value.replace('_', ' ').capitalize()} approved")

    def reject_request(self, kind: RequestKind, request_id: int) -> RequestResponse:
        kind = RequestKind(kind)
        with self.storage.lock:
            data = self._request_data(kind, request_id)
            if data["status"] != RequestStatus.PENDING:
                logger.info("Skipping rejection of %s %s: already %s", kind.value, request_id, data["status"].value)
                return self._request_response(kind, data, False, f"Request already {data['status'].value}")
            data["status"] = RequestStatus.REJECTED
            data["processed_at"] = self.clock()

        logger.info("Rejected %s %s", kind.value, request_id)
        return self._request_response(kind, data, True, f"{kind.value.replace('_', ' ').capitalize()} rejected")

    def approve_deposit(self, deposit_id: int) -> RequestResponse:
        return self.approve_request(RequestKind.DEPOSIT, deposit_id)

    def approve_withdrawal(self, withdrawal_id: int) -> RequestResponse:
        return self.approve_request(RequestKind.WITHDRAWAL, withdrawal_id)

    def approve_coin_purchase(self, purchase_id: int) -> RequestResponse:
        return self.approve_request(RequestKind.COIN_PURCHASE, purchase_id)

    def _apply_deposit(self, data: dict, user_data: dict, now: datetime) -> None:
        # Must run while the deposit is still pending so it is not counted as prior.
        self._pay_referral_commission(user_data, data, now)

        user_data["pkr_balance"] = user_data["pkr_balance"] + data["amount"]
        self._record_transaction(
            user_data["id"], TransactionType.DEPOSIT, data["amount"],
            f"Deposit via {data['method']}", now,
        )
        logger.info("Deposit %s approved: user %s +%s PKR", data["id"], user_data["id"], data["amount"])

    def _apply_withdrawal(self, data: dict, user_data: dict, now: datetime) -> None:
        if user_data["pkr_balance"] < data["amount"]:
            logger.warning(
                "Withdrawal %s left pending: user %s balance %s < %s",
                data["id"], user_data["id"], user_data["pkr_balance"], data["amount"],
            )
            raise InsufficientBalanceError(
                f"Insufficient balance: user has {format_pkr(user_data['pkr_balance'])}, "
                f"withdrawal is {format_pkr(data['amount'])}"
            )

        user_data["pkr_balance"] = user_data["pkr_balance"] - data["amount"]
        self._record_transaction(
            user_data["id"], TransactionType.WITHDRAWAL, data["amount"],
            f"Withdrawal via {data['method']}", now,
        )
        logger.info("Withdrawal %s approved: user %s -%s PKR", data["id"], user_data["id"], data["amount"])

    def _apply_coin_purchase(self, data: dict, user_data: dict, now: datetime) -> None:
        user_data["coin_balance"] = user_data["coin_balance"] + data["coin_amount"]
        self._record_transaction(
            user_data["id"], TransactionType.COIN_PURCHASE, Decimal(data["coin_amount"]),
            f"Purchased {data['coin_amount']} coins for {format_pkr(data['pkr_amount'])}", now,
        )
        logger.info("Coin purchase %s approved: user %s +%s coins", data["id"], user_data["id"], data["coin_amount"])

    def _pay_referral_commission(self, user_data: dict, deposit: dict, now: datetime) -> Optional[Decimal]:
        if not user_data.get("referred_by"):
            return None

        prior_approved = [
            d for d in self.storage.where("deposits", user_id=user_data["id"], status=RequestStatus.APPROVED)
            if d["id"] != deposit["id"]
        ]
        if prior_approved:
            return None

        referrer = self.storage.find_user_by_referral_code(user_data["referred_by"])
        if not referrer or referrer["id"] == user_data["id"]:
            logger.info("Referral code %s no longer resolves; no commission", user_data["referred_by"])
            return None

        percentage = self.get_system_settings().referral_percentage
        commission = _to_cents(deposit["amount"] * percentage / 100)
        if commission <= 0:
            return None

        referrer["pkr_balance"] = referrer["pkr_balance"] + commission
        self._record_transaction(
            referrer["id"], TransactionType.REFERRAL_COMMISSION, commission,
            f"Referral commission from {user_data['name']}", now,
        )
        logger.info("Referral commission %s paid to user %s for user %s", commission, referrer["id"], user_data["id"])
        return commission

    def _request_data(self, kind: RequestKind, request_id: int) -> dict:
        collection, _ = _REQUEST_TYPES[kind]
        data = self.storage.collection(collection).get(request_id)
        if not data:
            raise RequestNotFoundError(f"{kind.value} {request_id} not found")
        return data

    def _request_response(self, kind: RequestKind, data: dict, applied: bool, message: str) -> RequestResponse:
        _, model = _REQUEST_TYPES[kind]
        return RequestResponse(kind=kind, request=model(**data), applied=applied, message=message)

    # ------------------------------------------------------------------
    # Plans
    # ------------------------------------------------------------------

    def list_plans(self, include_inactive: bool = False) -> list[Plan]:
        plans = [Plan(**p) for p in self.storage.records("plans")]
        if not include_inactive:
            plans = [p for p in plans if p.is_active]
        return sorted(plans, key=lambda p: p.price)

    def get_plan(self, plan_id: int) -> Plan:
        plan_data = self.storage.plans.get(plan_id)
        if not plan_data:
            raise PlanNotFoundError(f"Plan {plan_id} not found")
        return Plan(**plan_data)

    def create_plan(self, request: PlanCreateRequest) -> Plan:
        plan_data = self.storage.insert("plans", request.model_dump())
        logger.info("Plan %s created: %s", plan_data["id"], plan_data["name"])
        return Plan(**plan_data)

    def update_plan(self, plan_id: int, request: PlanUpdateRequest) -> Plan:
        updates = request.model_dump(exclude_unset=True, exclude_none=True)
        with self.storage.lock:
            plan_data = self.storage.plans.get(plan_id)
            if not plan_data:
                raise PlanNotFoundError(f"Plan {plan_id} not found")
            plan_data.update(updates)
        logger.info("Plan %s updated: %s", plan_id, sorted(updates))
        return Plan(**plan_data)

    def delete_plan(self, plan_id: int) -> None:
        with self.storage.lock:
            if self.storage.plans.pop(plan_id, None) is None:
                raise PlanNotFoundError(f"Plan {plan_id} not found")
        logger.info("Plan %s deleted", plan_id)

    def purchase_plan(self, user_id: int, plan_id: int) -> PurchaseResponse:
        with self.storage.lock:
            user_data = self._user_data(user_id)
            plan_data = self.storage.plans.get(plan_id)
            if not plan_data:
                raise PlanNotFoundError(f"Plan {plan_id} not found")

            plan = Plan(**plan_data)
            if not plan.is_active:
                raise PlanInactiveError("Plan is not active")
            if user_data["pkr_balance"] < plan.price:
                raise InsufficientBalanceError("Insufficient PKR balance")
            if user_data["coin_balance"] < plan.coin_requirement:
                raise InsufficientCoinsError("Insufficient coins")

            now = self.clock()
            subscription = self.storage.insert("user_plans", {
                "user_id": user_id,
                "plan_id": plan.id,
                "plan_name": plan.name,
                "price": plan.price,
                "duration_days": plan.duration_days,
                "purchase_date": now,
                "expiry_date": now + timedelta(days=plan.duration_days),
                "total_profit": plan.price * plan.profit_rate / 100,
                "profit_claimed": ZERO,
            })
            user_data["pkr_balance"] = user_data["pkr_balance"] - plan.price
            user_data["coin_balance"] = user_data["coin_balance"] - plan.coin_requirement
            self._record_transaction(
                user_id, TransactionType.PLAN_PURCHASE, plan.price, f"Purchased {plan.name}", now,
            )

        logger.info("User %s purchased plan %s (subscription %s)", user_id, plan.id, subscription["id"])
        return PurchaseResponse(
            subscription=UserPlan(**subscription),
            user=UserProfile(**user_data),
            message=f"{plan.name} activated",
        )

    def list_subscriptions(self, user_id: int, active_only: bool = False) -> list[UserPlan]:
        now = self.clock()
        subscriptions = [UserPlan(**s) for s in self.storage.where("user_plans", user_id=user_id)]
        if active_only:
            subscriptions = [s for s in subscriptions if s.is_active(now)]
        return sorted(subscriptions, key=lambda s: s.purchase_date, reverse=True)

    # ------------------------------------------------------------------
    # Profit accrual
    # ------------------------------------------------------------------

    def accrue_profits(self) -> AccrualReport:
        """Credit every active subscription with profit earned up to now.

        Profit is linear over the subscription's duration and computed from
        absolute elapsed time, so missed or repeated runs settle correctly on
        the next call.
        """
        now = self.clock()
        report = AccrualReport(ran_at=now, processed=0)

        for subscription_id in [s["id"] for s in self.storage.records("user_plans")]:
            with self.storage.lock:
                data = self.storage.user_plans.get(subscription_id)
                if not data or now >= data["expiry_date"]:
                    continue
                report.processed += 1
                amount = self._accrue_subscription(data, now)
            if amount:
                report.credited.append(AccrualEntry(
                    subscription_id=subscription_id, user_id=data["user_id"], amount=amount,
                ))

        if report.credited:
            logger.info(
                "Profit accrual credited %s subscriptions, %s PKR in total",
                len(report.credited), report.total_credited,
            )
        return report

    def _accrue_subscription(self, data: dict, now: datetime) -> Optional[Decimal]:
        user_data = self.storage.users.get(data["user_id"])
        if not user_data:
            return None

        days_passed = max((now - data["purchase_date"]) // timedelta(days=1), 0)
        daily_profit = data["total_profit"] / data["duration_days"]
        expected = min(daily_profit * days_passed, data["total_profit"])
        if expected - data["profit_claimed"] <= self.config.profit_epsilon:
            return None

        # Credit whole cents; the fraction left over is paid on a later run.
        expected = _to_cents(expected)
        unclaimed = expected - data["profit_claimed"]
        user_data["pkr_balance"] = user_data["pkr_balance"] + unclaimed
        data["profit_claimed"] = expected
        self._record_transaction(
            user_data["id"], TransactionType.PLAN_PROFIT, unclaimed, f"Profit from {data['plan_name']}", now,
        )
        return unclaimed

    # ------------------------------------------------------------------
    # Daily reward
    # ------------------------------------------------------------------

    def daily_reward_status(self, user_id: int) -> DailyRewardStatus:
        self._user_data(user_id)
        settings = self.get_system_settings()
        last_claimed_at = self._last_reward_claim(user_id)
        next_claim_at = last_claimed_at + REWARD_COOLDOWN if last_claimed_at else None
        return DailyRewardStatus(
            enabled=settings.daily_reward_enabled,
            can_claim=settings.daily_reward_enabled and (next_claim_at is None or self.clock() >= next_claim_at),
            amount=settings.daily_reward_amount,
            last_claimed_at=last_claimed_at,
            next_claim_at=next_claim_at,
        )

    def claim_daily_reward(self, user_id: int) -> RewardResponse:
        settings = self.get_system_settings()
        if not settings.daily_reward_enabled:
            raise FeatureDisabledError("Daily reward is disabled")

        with self.storage.lock:
            user_data = self._user_data(user_id)
            now = self.clock()
            last_claimed_at = self._last_reward_claim(user_id)
            if last_claimed_at and now - last_claimed_at < REWARD_COOLDOWN:
                raise CooldownActiveError(
                    f"Daily reward not yet claimable; next claim at {(last_claimed_at + REWARD_COOLDOWN).isoformat()}"
                )

            amount = settings.daily_reward_amount
            user_data["coin_balance"] = user_data["coin_balance"] + amount
            self.storage.insert("daily_reward_claims", {"user_id": user_id, "amount": amount, "claimed_at": now})
            self._record_transaction(user_id, TransactionType.DAILY_REWARD, Decimal(amount), "Daily reward claimed", now)

        logger.info("User %s claimed daily reward of %s coins", user_id, amount)
        return RewardResponse(amount=amount, coin_balance=user_data["coin_balance"], message="Daily reward claimed")

    def _last_reward_claim(self, user_id: int) -> Optional[datetime]:
        claims = self.storage.where("daily_reward_claims", user_id=user_id)
        return max((c["claimed_at"] for c in claims), default=None)

    # ------------------------------------------------------------------
    # Spin wheel
    # ------------------------------------------------------------------

    def spin_status(self, user_id: int) -> SpinStatus:
        self._user_data(user_id)
        settings = self.get_system_settings()
        spins_today = self._spins_today(user_id, self.clock())
        return SpinStatus(
            enabled=settings.spin_wheel_enabled,
            can_spin=settings.spin_wheel_enabled and spins_today < 1,
            spins_today=spins_today,
            values=settings.spin_wheel_values,
        )

    def spin(self, user_id: int) -> RewardResponse:
        settings = self.get_system_settings()
        if not settings.spin_wheel_enabled:
            raise FeatureDisabledError("Spin wheel is disabled")
        if not settings.spin_wheel_values:
            raise PreconditionError("Spin wheel has no values configured")

        with self.storage.lock:
            user_data = self._user_data(user_id)
            now = self.clock()
            if self._spins_today(user_id, now) >= 1:
                raise CooldownActiveError("No spins left today")

            won = self.rng.choice(settings.spin_wheel_values)
            user_data["coin_balance"] = user_data["coin_balance"] + won
            self.storage.insert("spin_results", {"user_id": user_id, "amount": won, "spun_at": now})
            self._record_transaction(
                user_id, TransactionType.SPIN_WHEEL, Decimal(won), f"Won {won} coins from spin wheel", now,
            )

        logger.info("User %s won %s coins on the spin wheel", user_id, won)
        return RewardResponse(amount=won, coin_balance=user_data["coin_balance"], message=f"You won {won} coins")

    def _spins_today(self, user_id: int, now: datetime) -> int:
        # Resets at midnight in the platform timezone, not 24h after the last spin.
        tz = self.config.tz()
        today = now.astimezone(tz).date()
        return sum(
            1 for s in self.storage.where("spin_results", user_id=user_id)
            if s["spun_at"].astimezone(tz).date() == today
        )

    # ------------------------------------------------------------------
    # Admin user management
    # ------------------------------------------------------------------

    def list_users(self) -> list[AdminUserSummary]:
        summaries = []
        with self.storage.lock:
            for user_data in self.storage.records("users"):
                if user_data["is_admin"]:
                    continue
                summaries.append(AdminUserSummary(
                    **user_data,
                    total_deposit=self._approved_total("deposits", user_data["id"]),
                    total_withdrawal=self._approved_total("withdrawals", user_data["id"]),
                    referrals=len(self.storage.where("users", referred_by=user_data["referral_code"])),
                ))
        return sorted(summaries, key=lambda s: s.created_at, reverse=True)

    def adjust_balance(self, user_id: int, request: BalanceAdjustmentRequest) -> UserProfile:
        with self.storage.lock:
            user_data = self._user_data(user_id)
            new_pkr = user_data["pkr_balance"] + request.pkr_delta
            new_coins = user_data["coin_balance"] + request.coin_delta
            if new_pkr < 0:
                raise InsufficientBalanceError("Adjustment would make the PKR balance negative")
            if new_coins < 0:
                raise InsufficientCoinsError("Adjustment would make the coin balance negative")

            now = self.clock()
            user_data["pkr_balance"] = new_pkr
            user_data["coin_balance"] = new_coins
            if request.pkr_delta:
                self._record_transaction(
                    user_id, TransactionType.ADMIN_ADJUSTMENT, abs(request.pkr_delta),
                    f"Admin {'credit' if request.pkr_delta > 0 else 'debit'} of PKR", now,
                )
            if request.coin_delta:
                self._record_transaction(
                    user_id, TransactionType.ADMIN_ADJUSTMENT, Decimal(abs(request.coin_delta)),
                    f"Admin {'credit' if request.coin_delta > 0 else 'debit'} of coins", now,
                )

        logger.info("Admin adjusted user %s: %+f PKR, %+d coins", user_id, request.pkr_delta, request.coin_delta)
        return UserProfile(**user_data)

    def delete_user(self, user_id: int) -> dict[str, int]:
        """Remove a user together with every record that belongs to them."""
        removed = {}
        with self.storage.lock:
            user_data = self._user_data(user_id)
            if user_data["is_admin"]:
                raise PreconditionError("Admin accounts cannot be deleted")

            owned = {
                name: [r["id"] for r in self.storage.where(name, user_id=user_id)]
                for name in (
                    "deposits", "withdrawals", "coin_purchases", "user_plans",
                    "transactions", "daily_reward_claims", "spin_results",
                )
            }
            for name, ids in owned.items():
                collection = self.storage.collection(name)
                for record_id in ids:
                    del collection[record_id]
                removed[name] = len(ids)
            del self.storage.users[user_id]

        logger.info("Deleted user %s and owned records %s", user_id, removed)
        return removed

    # ------------------------------------------------------------------
    # History and statistics
    # ------------------------------------------------------------------

    def get_transaction_history(self, user_id: int, limit: int = 50, offset: int = 0) -> TransactionHistoryResponse:
        with self.storage.lock:
            user_data = self._user_data(user_id)
            entries = [Transaction(**t) for t in self.storage.where("transactions", user_id=user_id)]
            pkr_balance, coin_balance = user_data["pkr_balance"], user_data["coin_balance"]
        entries.sort(key=lambda t: (t.created_at, t.id), reverse=True)
        return TransactionHistoryResponse(
            user_id=user_id,
            entries=entries[offset:offset + limit],
            total_count=len(entries),
            pkr_balance=pkr_balance,
            coin_balance=coin_balance,
        )

    def user_stats(self, user_id: int) -> UserStats:
        with self.storage.lock:
            user_data = self._user_data(user_id)
            transactions = self.storage.where("transactions", user_id=user_id)
            return UserStats(
                total_deposit=self._approved_total("deposits", user_id),
                total_withdrawal=self._approved_total("withdrawals", user_id),
                total_profit=sum(
                    (t["amount"] for t in transactions if t["type"] == TransactionType.PLAN_PROFIT), ZERO
                ),
                total_invested=sum((s["price"] for s in self.storage.where("user_plans", user_id=user_id)), ZERO),
                total_referrals=len(self.storage.where("users", referred_by=user_data["referral_code"])),
                total_referral_earnings=sum(
                    (t["amount"] for t in transactions if t["type"] == TransactionType.REFERRAL_COMMISSION), ZERO
                ),
                referral_link=self.referral_link(user_id),
            )

    def admin_stats(self) -> AdminStats:
        with self.storage.lock:
            transactions = self.storage.records("transactions")
            total_deposits = sum(
                (d["amount"] for d in self.storage.where("deposits", status=RequestStatus.APPROVED)), ZERO
            )
            total_withdrawals = sum(
                (w["amount"] for w in self.storage.where("withdrawals", status=RequestStatus.APPROVED)), ZERO
            )
            total_referral_payouts = sum(
                (t["amount"] for t in transactions if t["type"] == TransactionType.REFERRAL_COMMISSION), ZERO
            )
            return AdminStats(
                total_users=sum(1 for u in self.storage.records("users") if not u["is_admin"]),
                total_deposits=total_deposits,
                total_withdrawals=total_withdrawals,
                admin_profit=total_deposits - total_withdrawals - total_referral_payouts,
                total_referral_payouts=total_referral_payouts,
                total_coins_bought=sum(
                    c["coin_amount"] for c in self.storage.where("coin_purchases", status=RequestStatus.APPROVED)
                ),
                total_coins_earned=(
                    sum(c["amount"] for c in self.storage.records("daily_reward_claims"))
                    + sum(s["amount"] for s in self.storage.records("spin_results"))
                ),
                total_plans_sold=len(self.storage.user_plans),
                total_user_profit=sum(
                    (t["amount"] for t in transactions if t["type"] == TransactionType.PLAN_PROFIT), ZERO
                ),
            )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _user_data(self, user_id: int) -> dict:
        user_data = self.storage.users.get(user_id)
        if not user_data:
            raise UserNotFoundError(f"User {user_id} not found")
        return user_data

    def _approved_total(self, collection: str, user_id: int) -> Decimal:
        return sum(
            (r["amount"] for r in self.storage.where(collection, user_id=user_id, status=RequestStatus.APPROVED)),
            ZERO,
        )

    def _record_transaction(
        self, user_id: int, tx_type: TransactionType, amount: Decimal, description: str, now: datetime,
    ) -> dict:
        return self.storage.insert("transactions", {
            "user_id": user_id,
            "type": tx_type,
            "amount": amount,
            "description": description,
            "created_at": now,
        })
